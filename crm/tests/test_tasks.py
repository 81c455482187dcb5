"""
Unit tests for Celery tasks.
"""
from unittest.mock import patch

import httpx
import pytest

from crm.services.calling_client import CallingPlatformError
from crm.tasks import sync_calling_contact


class TestSyncCallingContact:
    """Tests for the calling platform sync task."""

    @patch('crm.tasks.create_contact')
    def test_successful_sync(self, mock_create):
        mock_create.return_value = {'id': 42}

        result = sync_calling_contact.apply(args=('919876543210', 'Asha', 'new_contact')).get()

        assert result == {'id': 42}
        mock_create.assert_called_once_with('919876543210', 'Asha')

    @patch('crm.tasks.create_contact')
    def test_rejected_contact_is_dropped(self, mock_create):
        mock_create.side_effect = CallingPlatformError('create_contact failed (400)')

        result = sync_calling_contact.apply(args=('919876543210',)).get()

        assert result == {'error': 'create_contact failed (400)'}
        assert mock_create.call_count == 1

    @patch('crm.tasks.create_contact')
    def test_network_error_retries(self, mock_create):
        mock_create.side_effect = httpx.ConnectError('connection refused')

        with patch.object(sync_calling_contact, 'retry', side_effect=RuntimeError('retry scheduled')) as retry:
            with pytest.raises(RuntimeError, match='retry scheduled'):
                sync_calling_contact.apply(args=('919876543210',), throw=True)

        retry.assert_called_once()
