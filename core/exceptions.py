"""
Domain error taxonomy shared by the catalog, orders and payments apps,
plus the DRF exception handler that renders them.

Every domain error carries an HTTP status and a machine-readable code so
views can let them propagate and rely on ``api_exception_handler``.
"""
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Base class for checkout domain errors."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = 'order_error'

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.code, 'detail': self.message}
        payload.update(self.context)
        return payload


class OrderValidationError(OrderError):
    """Malformed or missing input, raised before storage is touched."""
    code = 'validation_error'

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        self.field = field
        super().__init__(message, field=field, **context)


class CartItemError(OrderError):
    """An error tied to one line of a submitted cart."""

    def __init__(self, message: str, item_index: Optional[int] = None,
                 item_name: Optional[str] = None, **context: Any):
        self.item_index = item_index
        self.item_name = item_name
        super().__init__(message, item_index=item_index, item_name=item_name, **context)


class ProductNotFound(CartItemError):
    status_code = status.HTTP_404_NOT_FOUND
    code = 'product_not_found'

    def __init__(self, product_id: Any, item_index: Optional[int] = None,
                 item_name: Optional[str] = None):
        self.product_id = product_id
        message = f"Product {product_id} not found or inactive"
        if item_index is not None:
            message = f"Item {item_index + 1}: {message}"
        super().__init__(message, item_index=item_index, item_name=item_name,
                         product_id=product_id)


class SizeUnavailable(CartItemError):
    code = 'size_unavailable'

    def __init__(self, product_id: Any, size: str, item_index: Optional[int] = None,
                 item_name: Optional[str] = None):
        self.product_id = product_id
        self.size = size
        label = item_name or f"product {product_id}"
        message = f"Size {size!r} is not offered for {label}"
        if item_index is not None:
            message = f"Item {item_index + 1}: {message}"
        super().__init__(message, item_index=item_index, item_name=item_name,
                         product_id=product_id, size=size)


class InsufficientStock(CartItemError):
    """Raised when a size does not hold enough units for the request."""
    status_code = status.HTTP_409_CONFLICT
    code = 'insufficient_stock'

    def __init__(self, product_id: Any, size: str, requested: int, available: int,
                 item_index: Optional[int] = None, item_name: Optional[str] = None):
        self.product_id = product_id
        self.size = size
        self.requested = requested
        self.available = available
        label = item_name or f"product {product_id}"
        message = (
            f"Insufficient stock for {label} in size {size}: "
            f"requested {requested}, available {available}"
        )
        if item_index is not None:
            message = f"Item {item_index + 1}: {message}"
        super().__init__(message, item_index=item_index, item_name=item_name,
                         product_id=product_id, size=size,
                         requested=requested, available=available)

    def for_item(self, item_index: int, item_name: str) -> 'InsufficientStock':
        """Return a copy of this error addressed to a cart line."""
        return InsufficientStock(
            self.product_id, self.size, self.requested, self.available,
            item_index=item_index, item_name=item_name,
        )


class InvalidTransition(OrderError):
    status_code = status.HTTP_409_CONFLICT
    code = 'invalid_transition'

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        current, target = str(current), str(target)
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot move order from '{current}' to '{target}'",
            current_status=current, requested_status=target,
        )


class InvalidSignature(OrderError):
    code = 'invalid_signature'

    def __init__(self, message: str = 'Invalid payment signature', gateway: Optional[str] = None):
        self.gateway = gateway
        super().__init__(message, gateway=gateway)


class PaymentGatewayError(OrderError):
    """The gateway could not be reached or refused the request."""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = 'gateway_error'

    def __init__(self, message: str, gateway: Optional[str] = None):
        self.gateway = gateway
        super().__init__(message, gateway=gateway)


class NotAuthorized(OrderError):
    status_code = status.HTTP_403_FORBIDDEN
    code = 'not_authorized'


def api_exception_handler(exc, context):
    """
    Render domain errors as structured JSON and hide internal failures.

    DRF's own exceptions (serializer validation, authentication, 404) keep
    their default field-addressable shape.
    """
    if isinstance(exc, OrderError):
        view = context.get('view')
        logger.warning(
            f"{exc.__class__.__name__} in {view.__class__.__name__ if view else 'view'}: {exc.message}"
        )
        return Response(exc.to_dict(), status=exc.status_code)

    response = exception_handler(exc, context)
    if response is not None:
        return response

    logger.exception(f"Unexpected error handling request: {exc}")
    payload = {'error': 'server_error', 'detail': 'An unexpected error occurred'}
    if settings.DEBUG:
        payload['debug'] = str(exc)
    return Response(payload, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
