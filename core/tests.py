"""
Tests for shared infrastructure: admin bootstrap, error rendering and
rate limiting.
"""
from unittest.mock import MagicMock, patch

import redis
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory

from core.bootstrap import ensure_default_admin
from core.exceptions import (
    InsufficientStock,
    InvalidTransition,
    ProductNotFound,
    api_exception_handler,
)
from core.rate_limiting import rate_limit, reset_redis_client
from orders.models import Order

User = get_user_model()


class BootstrapAdminTestCase(TestCase):

    def test_skipped_without_configuration(self):
        user, created = ensure_default_admin()
        self.assertIsNone(user)
        self.assertFalse(created)
        self.assertFalse(User.objects.exists())

    def test_creates_superuser_once(self):
        user, created = ensure_default_admin('ops@example.com', 'secret')

        self.assertTrue(created)
        self.assertTrue(user.is_superuser)
        self.assertEqual(user.username, 'ops')
        self.assertTrue(user.check_password('secret'))

        again, created = ensure_default_admin('OPS@example.com', 'other')
        self.assertFalse(created)
        self.assertEqual(again.pk, user.pk)
        self.assertEqual(User.objects.count(), 1)

    @override_settings(DEFAULT_ADMIN_EMAIL='env@example.com', DEFAULT_ADMIN_PASSWORD='pw')
    def test_reads_settings(self):
        user, created = ensure_default_admin()
        self.assertTrue(created)
        self.assertEqual(user.email, 'env@example.com')

    def test_management_command(self):
        call_command('bootstrap_admin', email='cmd@example.com', password='pw', stdout=MagicMock())
        self.assertTrue(User.objects.filter(email='cmd@example.com', is_staff=True).exists())

    def test_management_command_without_credentials(self):
        with self.assertRaises(CommandError):
            call_command('bootstrap_admin', stdout=MagicMock())


class ExceptionHandlerTestCase(SimpleTestCase):

    def test_domain_error_rendering(self):
        exc = InsufficientStock(7, 'M', requested=2, available=1, item_index=0, item_name='Tee')

        response = api_exception_handler(exc, {})

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'insufficient_stock')
        self.assertEqual(response.data['available'], 1)
        self.assertEqual(response.data['item_name'], 'Tee')
        self.assertTrue(response.data['detail'].startswith('Item 1:'))

    def test_none_fields_dropped(self):
        data = ProductNotFound(42).to_dict()
        self.assertNotIn('item_index', data)
        self.assertEqual(data['product_id'], 42)

    def test_transition_error(self):
        response = api_exception_handler(InvalidTransition('delivered', 'confirmed'), {})
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['current_status'], 'delivered')

    def test_transition_error_names_plain_statuses(self):
        error = InvalidTransition(Order.Status.DELIVERED, Order.Status.CONFIRMED)

        self.assertEqual(str(error), "Cannot move order from 'delivered' to 'confirmed'")
        self.assertNotIn('Status', error.message)
        self.assertIs(type(error.to_dict()['current_status']), str)

    def test_unexpected_error_hidden(self):
        with self.assertLogs('core.exceptions', level='ERROR'):
            response = api_exception_handler(RuntimeError('db password is hunter2'), {})

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data['error'], 'server_error')
        self.assertNotIn('debug', response.data)


class LimitedView:

    @rate_limit(max_requests=2, window_seconds=60)
    def post(self, request):
        return Response({'ok': True})


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitTestCase(SimpleTestCase):

    def setUp(self):
        reset_redis_client()
        self.addCleanup(reset_redis_client)
        self.request = APIRequestFactory().post('/', REMOTE_ADDR='10.0.0.1')

    def fake_redis(self, counts):
        client = MagicMock()
        client.incr.side_effect = counts
        client.ttl.return_value = 42
        return client

    def test_requests_over_limit_are_refused(self):
        client = self.fake_redis([1, 2, 3])
        with patch('core.rate_limiting.get_redis_client', return_value=client):
            view = LimitedView()
            first = view.post(self.request)
            view.post(self.request)
            third = view.post(self.request)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first['X-RateLimit-Remaining'], '1')
        self.assertEqual(third.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(third['Retry-After'], '42')
        client.expire.assert_called_once_with('rate_limit:LimitedView.post:10.0.0.1', 60)

    def test_fails_open_on_redis_error(self):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError('down')
        with patch('core.rate_limiting.get_redis_client', return_value=client):
            response = LimitedView().post(self.request)

        self.assertEqual(response.status_code, 200)

    def test_no_redis_allows_request(self):
        with patch('core.rate_limiting.get_redis_client', return_value=None):
            response = LimitedView().post(self.request)
        self.assertEqual(response.status_code, 200)
