"""
Payment Gateway Adapter.

The settlement service talks to a PaymentGateway, never to Stripe directly.
Two implementations:

- StripeGateway: PaymentIntents (and Checkout Sessions for the redirect flow)
  through stripe-python's StripeClient with an explicit HTTP timeout. The
  order number is the idempotency key so a retried checkout never creates a
  second charge. Customers and their saved cards live on Stripe too.
- SimulatedGateway: in-process stand-in for development and tests, with
  HMAC-SHA256 signed webhooks.

A timeout is reported as an unknown outcome, not as a failure.
"""
import hashlib
import hmac
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe
from flask import Flask, current_app

from ..utils.exceptions import ConfigurationError, GatewayError, GatewayTimeoutError, SignatureInvalidError
from ..utils.money import to_cents

logger = logging.getLogger(__name__)

# Normalised outcomes
OUTCOME_PAID = 'paid'
OUTCOME_FAILED = 'failed'
OUTCOME_PENDING = 'pending'
OUTCOME_UNKNOWN = 'unknown'

EVENT_CHARGE_SUCCEEDED = 'charge.succeeded'
EVENT_CHARGE_FAILED = 'charge.failed'
EVENT_IGNORED = 'ignored'

REFUND_PROCESSED = 'processed'
REFUND_PENDING = 'pending'
REFUND_FAILED = 'failed'


@dataclass
class ChargeHandle:
    """What the client needs to finish paying."""
    handle: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    status: str = OUTCOME_PENDING
    transaction_id: Optional[str] = None
    requires_action: bool = False  # Saved card needs 3-D Secure on the client


@dataclass
class ChargeStatus:
    outcome: str
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    order_id: Optional[int] = None


@dataclass
class RefundResult:
    status: str
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class GatewayEvent:
    """A verified webhook, reduced to what settlement needs."""
    type: str
    handle: Optional[str] = None
    order_id: Optional[int] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_type: Optional[str] = None
    event_id: Optional[str] = None


def _field(obj, name, default=None):
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _order_id_from(metadata) -> Optional[int]:
    raw = _field(metadata, 'order_id')
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _card_summary(method) -> Dict[str, Any]:
    card = _field(method, 'card') or {}
    return {
        'id': _field(method, 'id'),
        'brand': _field(card, 'brand'),
        'last4': _field(card, 'last4'),
        'exp_month': _field(card, 'exp_month'),
        'exp_year': _field(card, 'exp_year'),
    }


class PaymentGateway(ABC):
    """Interface the settlement service charges orders through."""

    name = 'gateway'
    signature_header = 'Stripe-Signature'

    @abstractmethod
    def create_charge(
        self,
        amount: Decimal,
        currency: str,
        order_id: int,
        order_number: str,
        metadata: Dict[str, Any] = None,
        customer_email: str = None,
        customer_id: str = None,
        payment_method_id: str = None,
        save_payment_method: bool = False
    ) -> ChargeHandle:
        """
        Start a charge. Raises GatewayError, or GatewayTimeoutError if the outcome is unknown.

        With payment_method_id the saved card is charged at once; the handle
        comes back paid, or pending with requires_action set.
        """

    @abstractmethod
    def create_checkout_session(
        self,
        amount: Decimal,
        currency: str,
        order_id: int,
        order_number: str,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        customer_email: str = None
    ) -> ChargeHandle:
        """Start a hosted checkout redirect for the order."""

    @abstractmethod
    def confirm_charge(self, handle: str) -> ChargeStatus:
        """Ask the processor whether a charge went through."""

    @abstractmethod
    def refund(self, handle: str, amount: Decimal, reason: str = None, idempotency_key: str = None) -> RefundResult:
        """Return money for a captured charge."""

    @abstractmethod
    def refund_status(self, refund_id: str) -> RefundResult:
        """Look up a refund whose outcome was still pending."""

    @abstractmethod
    def create_customer(self, email: str, name: str = None, user_id: int = None) -> str:
        """Create a processor customer to hold saved cards. Returns its id."""

    @abstractmethod
    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        """Saved cards of a customer as id, brand, last4, exp_month, exp_year."""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent:
        """Verify and parse a webhook. Raises SignatureInvalidError."""


class StripeGateway(PaymentGateway):
    """
    Stripe implementation.

    Handles starting with 'cs_' are Checkout Sessions; confirmation resolves
    them to the underlying PaymentIntent.
    """

    name = 'stripe'
    signature_header = 'Stripe-Signature'

    def __init__(self, api_key: str, webhook_secret: str = None, timeout: int = 10, client: stripe.StripeClient = None):
        if not api_key and client is None:
            raise ConfigurationError('STRIPE_SECRET_KEY is not set')
        self.webhook_secret = webhook_secret
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=2,
        )

    def create_charge(self, amount, currency, order_id, order_number, metadata=None, customer_email=None,
                      customer_id=None, payment_method_id=None, save_payment_method=False):
        params = {
            'amount': to_cents(amount),
            'currency': currency,
            'metadata': {'order_id': str(order_id), 'order_number': order_number, **(metadata or {})},
            'automatic_payment_methods': {'enabled': True},
            'description': f'SipGrounds order {order_number}',
        }
        if customer_email:
            params['receipt_email'] = customer_email
        if customer_id:
            params['customer'] = customer_id
            if save_payment_method:
                params['setup_future_usage'] = 'off_session'
        if payment_method_id:
            params['payment_method'] = payment_method_id
            params['confirm'] = True
            params['automatic_payment_methods'] = {'enabled': True, 'allow_redirects': 'never'}

        try:
            intent = self.client.payment_intents.create(
                params=params,
                options={'idempotency_key': f'pi-{order_number}'},
            )
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe timeout creating PaymentIntent for {order_number}: {e}")
            raise GatewayTimeoutError(original_error=e)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating PaymentIntent for {order_number}: {e}")
            raise GatewayError(_field(e, 'user_message') or 'Payment processing failed', e)

        status = _field(intent, 'status')
        return ChargeHandle(
            handle=_field(intent, 'id'),
            client_secret=_field(intent, 'client_secret'),
            status=OUTCOME_PAID if status == 'succeeded' else OUTCOME_PENDING,
            transaction_id=(_field(intent, 'latest_charge') or _field(intent, 'id')) if status == 'succeeded' else None,
            requires_action=status == 'requires_action',
        )

    def create_checkout_session(self, amount, currency, order_id, order_number, line_items,
                                success_url, cancel_url, customer_email=None):
        params = {
            'mode': 'payment',
            'payment_method_types': ['card'],
            'line_items': [{
                'price_data': {
                    'currency': currency,
                    'product_data': {'name': item['name']},
                    'unit_amount': to_cents(item['unit_price']),
                },
                'quantity': item['quantity'],
            } for item in line_items],
            'success_url': success_url + '?session_id={CHECKOUT_SESSION_ID}',
            'cancel_url': cancel_url,
            'metadata': {'order_id': str(order_id), 'order_number': order_number},
            'payment_intent_data': {
                'metadata': {'order_id': str(order_id), 'order_number': order_number},
            },
        }
        if customer_email:
            params['customer_email'] = customer_email

        # Discounts are not line items; charge the settled total in one line
        if sum(to_cents(i['unit_price']) * i['quantity'] for i in line_items) != to_cents(amount):
            params['line_items'] = [{
                'price_data': {
                    'currency': currency,
                    'product_data': {'name': f'SipGrounds order {order_number}'},
                    'unit_amount': to_cents(amount),
                },
                'quantity': 1,
            }]

        try:
            session = self.client.checkout.sessions.create(
                params=params,
                options={'idempotency_key': f'cs-{order_number}'},
            )
        except stripe.APIConnectionError as e:
            raise GatewayTimeoutError(original_error=e)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating Checkout Session for {order_number}: {e}")
            raise GatewayError(_field(e, 'user_message') or 'Payment processing failed', e)

        return ChargeHandle(handle=_field(session, 'id'), checkout_url=_field(session, 'url'))

    def confirm_charge(self, handle):
        try:
            if handle.startswith('cs_'):
                return self._confirm_session(handle)
            intent = self.client.payment_intents.retrieve(handle)
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe timeout confirming {handle}: {e}")
            return ChargeStatus(outcome=OUTCOME_UNKNOWN)
        except stripe.StripeError as e:
            raise GatewayError(_field(e, 'user_message') or 'Could not verify payment', e)

        return self._status_from_intent(intent)

    def _confirm_session(self, session_id: str) -> ChargeStatus:
        session = self.client.checkout.sessions.retrieve(session_id)
        order_id = _order_id_from(_field(session, 'metadata'))
        payment_status = _field(session, 'payment_status')

        if payment_status in ('paid', 'no_payment_required'):
            return ChargeStatus(
                outcome=OUTCOME_PAID,
                transaction_id=_field(session, 'payment_intent') or session_id,
                order_id=order_id,
            )
        if _field(session, 'status') == 'expired':
            return ChargeStatus(outcome=OUTCOME_FAILED, failure_reason='Checkout session expired', order_id=order_id)
        return ChargeStatus(outcome=OUTCOME_PENDING, order_id=order_id)

    def _status_from_intent(self, intent) -> ChargeStatus:
        status = _field(intent, 'status')
        order_id = _order_id_from(_field(intent, 'metadata'))
        transaction_id = _field(intent, 'latest_charge') or _field(intent, 'id')

        if status == 'succeeded':
            return ChargeStatus(outcome=OUTCOME_PAID, transaction_id=transaction_id, order_id=order_id)
        if status in ('requires_payment_method', 'canceled'):
            error = _field(intent, 'last_payment_error')
            reason = _field(error, 'message') or f'Payment {status.replace("_", " ")}'
            return ChargeStatus(outcome=OUTCOME_FAILED, failure_reason=reason, order_id=order_id)
        return ChargeStatus(outcome=OUTCOME_PENDING, order_id=order_id)

    def refund(self, handle, amount, reason=None, idempotency_key=None):
        params = {'amount': to_cents(amount), 'metadata': {'reason': reason or ''}}
        try:
            if handle.startswith('cs_'):
                session = self.client.checkout.sessions.retrieve(handle)
                handle = _field(session, 'payment_intent')
            params['payment_intent'] = handle
            refund = self.client.refunds.create(
                params=params,
                options={'idempotency_key': idempotency_key} if idempotency_key else None,
            )
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe timeout refunding {handle}: {e}")
            return RefundResult(status=REFUND_PENDING, failure_reason='Refund outcome unknown (timeout)')
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {handle}: {e}")
            return RefundResult(status=REFUND_FAILED, failure_reason=_field(e, 'user_message') or str(e))

        return self._refund_result(refund)

    @staticmethod
    def _refund_result(refund) -> RefundResult:
        status = _field(refund, 'status')
        if status == 'succeeded':
            return RefundResult(status=REFUND_PROCESSED, refund_id=_field(refund, 'id'))
        if status in ('failed', 'canceled'):
            return RefundResult(
                status=REFUND_FAILED,
                refund_id=_field(refund, 'id'),
                failure_reason=_field(refund, 'failure_reason') or f'Refund {status}',
            )
        return RefundResult(status=REFUND_PENDING, refund_id=_field(refund, 'id'))

    def refund_status(self, refund_id):
        try:
            refund = self.client.refunds.retrieve(refund_id)
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe timeout looking up refund {refund_id}: {e}")
            return RefundResult(status=REFUND_PENDING, refund_id=refund_id,
                                failure_reason='Refund outcome unknown (timeout)')
        except stripe.StripeError as e:
            raise GatewayError(_field(e, 'user_message') or 'Could not look up refund', e)
        return self._refund_result(refund)

    def create_customer(self, email, name=None, user_id=None):
        params = {'email': email, 'metadata': {'user_id': str(user_id) if user_id is not None else ''}}
        if name:
            params['name'] = name
        try:
            customer = self.client.customers.create(
                params=params,
                options={'idempotency_key': f'cus-{user_id}'} if user_id is not None else None,
            )
        except stripe.APIConnectionError as e:
            raise GatewayTimeoutError(original_error=e)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating customer for user {user_id}: {e}")
            raise GatewayError(_field(e, 'user_message') or 'Could not create customer', e)
        return _field(customer, 'id')

    def list_payment_methods(self, customer_id):
        try:
            methods = self.client.payment_methods.list(params={'customer': customer_id, 'type': 'card'})
        except stripe.StripeError as e:
            logger.error(f"Stripe error listing payment methods for {customer_id}: {e}")
            raise GatewayError(_field(e, 'user_message') or 'Could not load payment methods', e)
        return [_card_summary(method) for method in _field(methods, 'data') or []]

    def verify_webhook_signature(self, payload, signature):
        if not self.webhook_secret:
            raise ConfigurationError('STRIPE_WEBHOOK_SECRET is not set')
        if not signature:
            raise SignatureInvalidError('Missing Stripe-Signature header')
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise SignatureInvalidError('Invalid webhook payload')
        except stripe.SignatureVerificationError:
            raise SignatureInvalidError()

        return self.parse_event(event)

    @staticmethod
    def parse_event(event) -> GatewayEvent:
        """Map Stripe event types onto charge.succeeded / charge.failed."""
        event_type = _field(event, 'type')
        obj = _field(_field(event, 'data'), 'object')
        order_id = _order_id_from(_field(obj, 'metadata'))
        event_id = _field(event, 'id')

        if event_type == 'payment_intent.succeeded':
            return GatewayEvent(
                type=EVENT_CHARGE_SUCCEEDED,
                handle=_field(obj, 'id'),
                order_id=order_id,
                transaction_id=_field(obj, 'latest_charge') or _field(obj, 'id'),
                raw_type=event_type,
                event_id=event_id,
            )
        if event_type == 'payment_intent.payment_failed':
            error = _field(obj, 'last_payment_error')
            return GatewayEvent(
                type=EVENT_CHARGE_FAILED,
                handle=_field(obj, 'id'),
                order_id=order_id,
                failure_reason=_field(error, 'message') or 'Payment failed',
                raw_type=event_type,
                event_id=event_id,
            )
        if event_type == 'checkout.session.completed' and _field(obj, 'payment_status') == 'paid':
            return GatewayEvent(
                type=EVENT_CHARGE_SUCCEEDED,
                handle=_field(obj, 'id'),
                order_id=order_id,
                transaction_id=_field(obj, 'payment_intent') or _field(obj, 'id'),
                raw_type=event_type,
                event_id=event_id,
            )
        return GatewayEvent(type=EVENT_IGNORED, raw_type=event_type, event_id=event_id)


class SimulatedGateway(PaymentGateway):
    """
    In-process processor for development and tests.

    Charges succeed unless told otherwise with set_outcome(). Refunds take
    refund_outcome and can be settled later with settle_refund(). Webhooks
    are signed with HMAC-SHA256 over the raw body, hex encoded.
    """

    name = 'simulated'
    signature_header = 'X-Simulated-Signature'

    def __init__(self, webhook_secret: str = 'whsec_simulated', default_outcome: str = OUTCOME_PAID):
        self.webhook_secret = webhook_secret
        self.default_outcome = default_outcome
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.fail_next_create: Optional[Exception] = None
        self.refund_outcome = REFUND_PROCESSED
        self.fail_next_refund = False
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.payment_methods: Dict[str, List[Dict[str, Any]]] = {}

    def _new_charge(self, prefix: str, amount, currency, order_id, order_number) -> str:
        # Same order number, same charge
        for handle, charge in self.charges.items():
            if charge['order_number'] == order_number and handle.startswith(prefix):
                return handle
        handle = f'{prefix}{secrets.token_hex(8)}'
        self.charges[handle] = {
            'amount': to_cents(amount),
            'currency': currency,
            'order_id': order_id,
            'order_number': order_number,
            'outcome': self.default_outcome,
            'failure_reason': None,
        }
        return handle

    def _saved_method(self, customer_id, payment_method_id) -> Dict[str, Any]:
        for method in self.payment_methods.get(customer_id, []):
            if method['id'] == payment_method_id:
                return method
        raise GatewayError('No such payment method')

    def create_charge(self, amount, currency, order_id, order_number, metadata=None, customer_email=None,
                      customer_id=None, payment_method_id=None, save_payment_method=False):
        if self.fail_next_create is not None:
            error, self.fail_next_create = self.fail_next_create, None
            raise error
        if payment_method_id:
            self._saved_method(customer_id, payment_method_id)
        handle = self._new_charge('sim_pi_', amount, currency, order_id, order_number)
        charge = self.charges[handle]
        charge['customer_id'] = customer_id
        charge['save_payment_method'] = save_payment_method
        result = ChargeHandle(handle=handle, client_secret=f'{handle}_secret_{secrets.token_hex(4)}')

        if payment_method_id:
            # Saved card is confirmed on the spot
            charge['payment_method_id'] = payment_method_id
            if charge['outcome'] == OUTCOME_PAID:
                result.status = OUTCOME_PAID
                result.transaction_id = f'sim_ch_{handle}'
            elif charge['outcome'] == OUTCOME_FAILED:
                raise GatewayError(charge['failure_reason'] or 'Your card was declined.')
            else:
                result.requires_action = True
        return result

    def create_checkout_session(self, amount, currency, order_id, order_number, line_items,
                                success_url, cancel_url, customer_email=None):
        if self.fail_next_create is not None:
            error, self.fail_next_create = self.fail_next_create, None
            raise error
        handle = self._new_charge('cs_sim_', amount, currency, order_id, order_number)
        return ChargeHandle(handle=handle, checkout_url=f'{success_url}?session_id={handle}')

    def set_outcome(self, handle: str, outcome: str, failure_reason: str = None) -> None:
        self.charges[handle]['outcome'] = outcome
        self.charges[handle]['failure_reason'] = failure_reason

    def confirm_charge(self, handle):
        charge = self.charges.get(handle)
        if charge is None:
            raise GatewayError(f'No such payment: {handle}')

        outcome = charge['outcome']
        if outcome == OUTCOME_PAID:
            return ChargeStatus(outcome=OUTCOME_PAID, transaction_id=f'sim_ch_{handle}', order_id=charge['order_id'])
        if outcome == OUTCOME_FAILED:
            return ChargeStatus(
                outcome=OUTCOME_FAILED,
                failure_reason=charge['failure_reason'] or 'Your card was declined.',
                order_id=charge['order_id'],
            )
        return ChargeStatus(outcome=outcome, order_id=charge['order_id'])

    def refund(self, handle, amount, reason=None, idempotency_key=None):
        if self.fail_next_refund:
            # Request lost on the way; nothing recorded
            self.fail_next_refund = False
            return RefundResult(status=REFUND_PENDING, failure_reason='Refund outcome unknown (timeout)')

        if idempotency_key:
            for existing in self.refunds:
                if existing['idempotency_key'] == idempotency_key:
                    return self._refund_result(existing)

        refund = {
            'handle': handle,
            'amount': to_cents(amount),
            'reason': reason,
            'refund_id': f'sim_re_{secrets.token_hex(6)}',
            'idempotency_key': idempotency_key,
            'status': self.refund_outcome,
            'failure_reason': 'Simulated refund failure' if self.refund_outcome == REFUND_FAILED else None,
        }
        self.refunds.append(refund)
        return self._refund_result(refund)

    @staticmethod
    def _refund_result(refund) -> RefundResult:
        return RefundResult(status=refund['status'], refund_id=refund['refund_id'], failure_reason=refund['failure_reason'])

    def settle_refund(self, refund_id: str, status: str, failure_reason: str = None) -> None:
        for refund in self.refunds:
            if refund['refund_id'] == refund_id:
                refund['status'] = status
                refund['failure_reason'] = failure_reason
                return
        raise KeyError(refund_id)

    def refund_status(self, refund_id):
        for refund in self.refunds:
            if refund['refund_id'] == refund_id:
                return self._refund_result(refund)
        raise GatewayError(f'No such refund: {refund_id}')

    def create_customer(self, email, name=None, user_id=None):
        customer_id = f'sim_cus_{secrets.token_hex(6)}'
        self.customers[customer_id] = {'email': email, 'name': name, 'user_id': user_id}
        self.payment_methods[customer_id] = []
        return customer_id

    def add_payment_method(self, customer_id: str, brand: str = 'visa', last4: str = '4242',
                           exp_month: int = 12, exp_year: int = 2030) -> str:
        """Attach a card to a customer, as the client-side card form would."""
        method_id = f'sim_pm_{secrets.token_hex(6)}'
        self.payment_methods.setdefault(customer_id, []).append({
            'id': method_id, 'brand': brand, 'last4': last4, 'exp_month': exp_month, 'exp_year': exp_year,
        })
        return method_id

    def list_payment_methods(self, customer_id):
        if customer_id not in self.customers:
            raise GatewayError(f'No such customer: {customer_id}')
        return [dict(method) for method in self.payment_methods.get(customer_id, [])]

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, payload, signature):
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise SignatureInvalidError()
        try:
            body = json.loads(payload)
        except ValueError:
            raise SignatureInvalidError('Invalid webhook payload')

        data = body.get('data') or {}
        event_type = body.get('type')
        if event_type not in (EVENT_CHARGE_SUCCEEDED, EVENT_CHARGE_FAILED):
            return GatewayEvent(type=EVENT_IGNORED, raw_type=event_type, event_id=body.get('id'))

        return GatewayEvent(
            type=event_type,
            handle=data.get('handle'),
            order_id=_order_id_from(data),
            transaction_id=data.get('transaction_id') or (f"sim_ch_{data.get('handle')}" if data.get('handle') else None),
            failure_reason=data.get('failure_reason'),
            raw_type=event_type,
            event_id=body.get('id'),
        )


def init_payment_gateway(app: Flask) -> PaymentGateway:
    """Build the configured gateway and register it on the app."""
    gateway_name = app.config.get('PAYMENT_GATEWAY', 'stripe')
    if gateway_name == 'simulated':
        gateway = SimulatedGateway(webhook_secret=app.config.get('SIMULATED_WEBHOOK_SECRET', 'whsec_simulated'))
    elif gateway_name == 'stripe':
        gateway = StripeGateway(
            api_key=app.config.get('STRIPE_SECRET_KEY'),
            webhook_secret=app.config.get('STRIPE_WEBHOOK_SECRET'),
            timeout=app.config.get('PAYMENT_GATEWAY_TIMEOUT', 10),
        )
    else:
        raise ConfigurationError(f'Unknown PAYMENT_GATEWAY: {gateway_name}')

    app.extensions['payment_gateway'] = gateway
    logger.info(f'Payment gateway: {gateway.name}')
    return gateway


def get_payment_gateway() -> PaymentGateway:
    return current_app.extensions['payment_gateway']
