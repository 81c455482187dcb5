"""
HTTP views for the lead sync webhook.
"""
import hmac
import json
import logging
import uuid

from django.conf import settings
from django.http import HttpResponse, JsonResponse
from django.views import View
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from crm.routing import dispatch_event
from crm.runtime import get_pipeline
from crm.services.validation import LeadValidationError

logger = logging.getLogger(__name__)


class WebhookView(View):
    """
    Single inbound endpoint for every upstream integration.

    GET /webhooks/events/
    - Liveness check

    POST /webhooks/events/
    - JSON body, routed by event shape
    - 200 with ``status: success`` once the event is accepted (backend sync
      may still be pending on the retry queue)
    - 400 on malformed JSON or an invalid lead
    - 500 on an unexpected error
    """

    async def get(self, request):
        return HttpResponse('Lead sync webhook is running.', content_type='text/plain')

    def _authorized(self, request) -> bool:
        secret = settings.WEBHOOK_SHARED_SECRET
        if not secret:
            return True
        supplied = request.headers.get('X-Webhook-Secret', '')
        return hmac.compare_digest(supplied.encode(), secret.encode())

    async def post(self, request):
        # Correlation ID for request tracing
        correlation_id = str(uuid.uuid4())

        if not self._authorized(request):
            logger.warning(f"Rejected webhook with bad secret, correlation_id={correlation_id}")
            return JsonResponse(
                {'status': 'error', 'error': 'Unauthorized', 'correlation_id': correlation_id},
                status=status.HTTP_401_UNAUTHORIZED,
            )

        try:
            params = json.loads(request.body or b'{}')
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Malformed JSON payload: {e}, correlation_id={correlation_id}")
            return JsonResponse(
                {'status': 'error', 'error': 'Malformed JSON', 'correlation_id': correlation_id},
                status=status.HTTP_400_BAD_REQUEST,
            )
        if not isinstance(params, dict):
            return JsonResponse(
                {'status': 'error', 'error': 'Expected a JSON object', 'correlation_id': correlation_id},
                status=status.HTTP_400_BAD_REQUEST,
            )

        logger.debug(f"Received webhook: {json.dumps(params, default=str)}")

        try:
            result = await dispatch_event(params, get_pipeline())
        except LeadValidationError as e:
            logger.warning(f"Rejected event: {e}, correlation_id={correlation_id}")
            return JsonResponse(
                {'status': 'error', **e.to_dict(), 'correlation_id': correlation_id},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except Exception as e:
            logger.error(
                f"Error processing webhook request: {e}, "
                f"correlation_id={correlation_id}",
                exc_info=True
            )
            return JsonResponse(
                {'status': 'error', 'error': 'Internal server error', 'correlation_id': correlation_id},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return JsonResponse({'status': 'success', **result, 'correlation_id': correlation_id})


class DiagnosticView(APIView):
    """
    GET /webhooks/diagnostic/

    Read-only retry-queue snapshot for dashboards and health checks.
    """

    def get(self, request):
        return Response(get_pipeline().queue.get_stats(), status=status.HTTP_200_OK)
