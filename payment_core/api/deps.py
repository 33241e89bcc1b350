"""FastAPI dependencies."""

from fastapi import Request

from payment_core.engine.service import PaymentService


def get_payment_service(request: Request) -> PaymentService:
    """The service composed at startup (see ``payment_core.main``)."""
    return request.app.state.payment_service
