"""
Webhook handlers for SipGrounds.
Processes payment processor events for order settlement.
"""
from .payments import payment_webhook_bp

__all__ = ['payment_webhook_bp']
