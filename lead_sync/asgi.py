"""
ASGI config for lead_sync project.

Serve with an ASGI server (e.g. ``uvicorn lead_sync.asgi:application``) so the
async webhook view and the retry scheduler share one event loop per process.
Lifespan shutdown stops the retry loop and logs anything still queued.
"""
import logging
import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'lead_sync.settings')
django_application = get_asgi_application()

from crm.runtime import get_pipeline  # noqa: E402  (needs the app registry)

logger = logging.getLogger(__name__)


async def _lifespan(receive, send):
    while True:
        message = await receive()
        if message['type'] == 'lifespan.startup':
            await send({'type': 'lifespan.startup.complete'})
        elif message['type'] == 'lifespan.shutdown':
            queue = get_pipeline().queue
            if len(queue):
                logger.warning(f"Shutting down with {len(queue)} pending write(s)")
            await queue.stop(flush=True)
            await send({'type': 'lifespan.shutdown.complete'})
            return


async def application(scope, receive, send):
    if scope['type'] == 'lifespan':
        await _lifespan(receive, send)
        return
    await django_application(scope, receive, send)
