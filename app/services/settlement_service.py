"""
Settlement Orchestrator.

Checkout builds and persists a pending order, then either pays it with points
in one transaction or starts a processor charge. Every route to "paid"
(client confirmation, webhook, zero-total order) goes through
_commit_paid_order(), whose first statement is a guarded UPDATE:

    UPDATE orders SET paid = true, status = 'confirmed', ...
     WHERE id = :id AND paid = false AND status = 'pending'

Exactly one caller wins it; only the winner credits points, moves stock and
records coupon usage. Everyone else gets an "already settled" success.

Results are dicts: {'success': True, 'order': {...}} or
{'success': False, 'error': '...', 'error_code': '...'}.
"""
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.order import Order, OrderItem, OrderStatus, OrderType, PaymentMethod, RefundStatus
from ..models.user import User
from ..utils.errors import GENERIC_ERROR_MESSAGE
from ..utils.exceptions import (
    AlreadySettled,
    GatewayError,
    GatewayTimeoutError,
    InsufficientPointsError,
    InsufficientStockError,
    InvalidCouponError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    PermissionDeniedError,
    SettlementError,
    UserNotFoundError,
    ValidationError,
)
from ..utils.money import ZERO, floor_points, to_money
from . import catalog_service
from .coupon_service import CouponService
from .order_state import OrderStateMachine
from .payment_gateway import (
    EVENT_CHARGE_FAILED,
    EVENT_CHARGE_SUCCEEDED,
    OUTCOME_FAILED,
    OUTCOME_PAID,
    REFUND_FAILED,
    REFUND_PROCESSED,
    GatewayEvent,
    PaymentGateway,
    get_payment_gateway,
)
from .points_service import PointsLedger, points_for_total

logger = logging.getLogger(__name__)

FLOW_INTENT = 'intent'
FLOW_REDIRECT = 'redirect'

MAX_CART_LINES = 50


def _refund_key(order: Order) -> str:
    return f'refund-{order.order_number}'


class SettlementService:
    """
    Order checkout, payment confirmation and cancellation.

    Usage:
        service = SettlementService()
        result = service.checkout(user.id, [{'item_id': 3, 'quantity': 2}], coupon_code='WELCOME10')
        result = service.confirm_payment(user.id, order_id=result['order']['id'])
    """

    def __init__(self, gateway: PaymentGateway = None, ledger: PointsLedger = None, coupons: CouponService = None):
        self.gateway = gateway or get_payment_gateway()
        self.ledger = ledger or PointsLedger()
        self.coupons = coupons or CouponService()

    # ==================== Checkout ====================

    def checkout(
        self,
        user_id: int,
        cart_items: List[Dict[str, Any]],
        cafe_id=None,
        coupon_code: str = None,
        use_points: bool = False,
        order_type: str = OrderType.PICKUP.value,
        pickup_time=None,
        customer_notes: str = None,
        payment_flow: str = FLOW_INTENT,
        success_url: str = None,
        cancel_url: str = None,
        currency: str = 'usd',
        payment_method_id: str = None,
        save_payment_method: bool = False
    ) -> Dict[str, Any]:
        """
        Price a cart, persist a pending order and start paying for it.

        Args:
            user_id: Customer placing the order
            cart_items: [{'item_id', 'item_type'?, 'quantity', 'customizations'?}]
            cafe_id: Cafe the order is for
            coupon_code: Optional code; an invalid one just gives no discount
            use_points: Pay with loyalty points instead of the processor
            order_type: pickup, delivery or dine_in
            pickup_time: ISO datetime string or datetime
            customer_notes: Free text for the barista
            payment_flow: 'intent' (client-side confirm) or 'redirect' (hosted checkout)
            success_url: Redirect target after hosted checkout
            cancel_url: Redirect target if hosted checkout is abandoned
            currency: ISO currency for the processor
            payment_method_id: Saved card to charge straight away
            save_payment_method: Keep the card entered for this order for next time

        Returns:
            Dict with the order and, for processor payments, the client secret
            or checkout URL
        """
        try:
            user = db.session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            order = self._build_order(
                user, cart_items, cafe_id, coupon_code, use_points,
                order_type, pickup_time, customer_notes
            )
            db.session.add(order)
            db.session.commit()
        except SettlementError as e:
            db.session.rollback()
            return self._failure(e)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Checkout failed for user {user_id}")
            return self._internal_failure()

        logger.info(
            f"Order {order.order_number} created: user {user_id}, subtotal {order.subtotal}, "
            f"discount {order.discount_amount}, total {order.total_amount}, method {order.payment_method}"
        )

        if use_points:
            return self._pay_with_points(order)

        if to_money(order.total_amount) == ZERO:
            # Nothing to charge; settle straight away
            result = self._commit_paid_order(order, transaction_id=None)
            result['payment_required'] = False
            return result

        return self._start_processor_payment(
            order, user, payment_flow, success_url, cancel_url, currency,
            payment_method_id=payment_method_id, save_payment_method=save_payment_method,
        )

    def _build_order(self, user, cart_items, cafe_id, coupon_code, use_points,
                     order_type, pickup_time, customer_notes) -> Order:
        """Resolve, stock-check and price every line. Writes nothing."""
        if not isinstance(cart_items, list) or not cart_items:
            raise ValidationError('Cart is empty', 'items')
        if len(cart_items) > MAX_CART_LINES:
            raise ValidationError(f'Cart has more than {MAX_CART_LINES} lines', 'items')

        order_type = order_type or OrderType.PICKUP.value
        if order_type not in [t.value for t in OrderType]:
            raise ValidationError(f'Invalid order type: {order_type}', 'order_type')

        lines = []
        wanted = defaultdict(int)
        for raw in cart_items:
            if not isinstance(raw, dict):
                raise ValidationError('Each cart item must be an object', 'items')
            item_ref = raw.get('item_id') or raw.get('menu_item_id') or raw.get('product_id') or raw.get('id')
            kind_hint = raw.get('item_type') or ('product' if raw.get('product_id') else None)
            quantity = catalog_service.check_quantity(raw.get('quantity', 1))

            entry = catalog_service.resolve(item_ref, kind_hint)
            wanted[(entry.kind, entry.id)] += quantity
            if not entry.has_stock_for(wanted[(entry.kind, entry.id)]):
                raise InsufficientStockError(entry.name, entry.stock_quantity, wanted[(entry.kind, entry.id)])

            customizations = self._clean_customizations(raw.get('customizations'))
            lines.append(OrderItem(
                item_kind=entry.kind.value,
                catalog_item_id=entry.id,
                name=entry.name,
                category=entry.category,
                unit_price=catalog_service.price_with_customizations(entry, customizations),
                quantity=quantity,
                customizations=customizations,
                points_earned=catalog_service.points_with_customizations(entry, customizations),
            ))

        subtotal = to_money(sum((line.line_total for line in lines), ZERO))
        coupon, discount = self.coupons.evaluate_for_checkout(coupon_code, user.id, subtotal, lines, cafe_id)
        total = max(ZERO, subtotal - discount)

        return Order(
            user_id=user.id,
            cafe_id=str(cafe_id) if cafe_id is not None else None,
            items=lines,
            subtotal=subtotal,
            discount_amount=discount,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
            total_amount=total,
            total_points_earned=0 if use_points else points_for_total(total),
            status=OrderStatus.PENDING.value,
            order_type=order_type,
            pickup_time=self._parse_pickup_time(pickup_time),
            customer_notes=str(customer_notes)[:500] if customer_notes else None,
            payment_method=PaymentMethod.POINTS.value if use_points else self.gateway.name,
            paid=False,
        )

    @staticmethod
    def _clean_customizations(raw) -> Dict[str, Any]:
        if not raw:
            return {}
        if not isinstance(raw, dict):
            raise ValidationError('customizations must be an object', 'customizations')
        extras = []
        for extra in raw.get('extras') or []:
            name = extra.get('name') if isinstance(extra, dict) else extra
            if name:
                extras.append(str(name))
        cleaned = {
            'size': raw.get('size'),
            'milk': raw.get('milk'),
            'extras': extras,
            'special_instructions': raw.get('special_instructions') or raw.get('specialInstructions'),
        }
        return {k: v for k, v in cleaned.items() if v}

    @staticmethod
    def _parse_pickup_time(value) -> Optional[datetime]:
        if not value:
            return None
        if isinstance(value, datetime):
            return value
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError('pickup_time must be an ISO 8601 datetime', 'pickup_time')
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
        return parsed

    # ==================== Points payment ====================

    def _pay_with_points(self, order: Order) -> Dict[str, Any]:
        """
        Settle a pending order with points, all or nothing.

        The balance must cover the order total; floor(total) points are
        redeemed and no points are earned.
        """
        order_id = order.id
        total = to_money(order.total_amount)
        points_cost = floor_points(total)
        now = datetime.utcnow()

        try:
            self._claim_payment(order_id, transaction_id=None, now=now)
            self.ledger.debit(
                order.user_id,
                points_cost,
                f'Paid for order {order.order_number} with points',
                related_order_id=order_id,
                minimum_balance=int(math.ceil(total)),
            )
            for item in order.items:
                item.stock_taken = catalog_service.decrement_stock(
                    item.item_kind, item.catalog_item_id, item.quantity
                )
            if order.coupon_id:
                self.coupons.record_usage(
                    order.coupon_id, order.user_id, order_id, order.cafe_id, order.discount_amount
                )

            order.total_points_earned = 0
            order.estimated_ready_time = now + timedelta(minutes=order.estimated_prep_minutes())
            db.session.commit()
        except AlreadySettled:
            db.session.rollback()
            return self._already_settled(db.session.get(Order, order_id))
        except (InsufficientPointsError, InsufficientStockError, InvalidCouponError) as e:
            db.session.rollback()
            order = self._record_failure(order_id, e.message)
            logger.info(f"Points payment refused for order {order.order_number}: {e.message}")
            return self._failure(e, order)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Points payment failed for order {order_id}")
            return self._internal_failure()

        logger.info(f"Order {order.order_number} paid with {points_cost} points")
        return self._settled(order, points_redeemed=points_cost, payment_required=False)

    # ==================== Processor payment ====================

    def _start_processor_payment(self, order, user, payment_flow, success_url, cancel_url, currency,
                                 payment_method_id=None, save_payment_method=False):
        try:
            if payment_flow == FLOW_REDIRECT:
                if not success_url or not cancel_url:
                    raise ValidationError('success_url and cancel_url are required for checkout sessions')
                handle = self.gateway.create_checkout_session(
                    amount=to_money(order.total_amount),
                    currency=currency,
                    order_id=order.id,
                    order_number=order.order_number,
                    line_items=[
                        {'name': item.name, 'unit_price': item.unit_price, 'quantity': item.quantity}
                        for item in order.items
                    ],
                    success_url=success_url,
                    cancel_url=cancel_url,
                    customer_email=user.email,
                )
            else:
                customer_id = None
                if payment_method_id or save_payment_method:
                    customer_id = self._ensure_customer(user)
                handle = self.gateway.create_charge(
                    amount=to_money(order.total_amount),
                    currency=currency,
                    order_id=order.id,
                    order_number=order.order_number,
                    metadata={'user_id': str(user.id)},
                    customer_email=user.email,
                    customer_id=customer_id,
                    payment_method_id=payment_method_id,
                    save_payment_method=save_payment_method,
                )
        except GatewayTimeoutError as e:
            self._record_failure(order.id, 'Payment processor timed out; awaiting reconciliation')
            logger.warning(f"Charge outcome unknown for order {order.order_number}")
            result = self._failure(e, order)
            result['pending_reconciliation'] = True
            return result
        except (GatewayError, ValidationError) as e:
            order = self._record_failure(order.id, e.message)
            return self._failure(e, order)

        order.payment_handle = handle.handle
        db.session.commit()

        if handle.status == OUTCOME_PAID:
            # Saved card went through on the spot
            result = self._commit_paid_order(order, handle.transaction_id)
            result['payment_required'] = False
            return result

        return {
            'success': True,
            'order': order.to_dict(),
            'payment_required': True,
            'payment_handle': handle.handle,
            'client_secret': handle.client_secret,
            'checkout_url': handle.checkout_url,
            'requires_action': handle.requires_action,
        }

    def _ensure_customer(self, user: User) -> str:
        """Processor customer for the user, created on first use."""
        if not user.stripe_customer_id:
            user.stripe_customer_id = self.gateway.create_customer(user.email, user.username, user.id)
            db.session.commit()
            logger.info(f"Created processor customer for user {user.id}")
        return user.stripe_customer_id

    def saved_payment_methods(self, user_id: int) -> Dict[str, Any]:
        """Cards the user saved at an earlier checkout."""
        user = db.session.get(User, user_id)
        if user is None:
            return self._failure(UserNotFoundError(user_id))
        if not user.stripe_customer_id:
            return {'success': True, 'payment_methods': []}
        try:
            methods = self.gateway.list_payment_methods(user.stripe_customer_id)
        except GatewayError as e:
            return self._failure(e)
        return {'success': True, 'payment_methods': methods}

    def confirm_payment(self, user_id: int, order_id: int = None, handle: str = None) -> Dict[str, Any]:
        """
        Client-driven confirmation after the processor payment sheet closes.

        Safe to call any number of times, and safe to race with the webhook.
        """
        try:
            order = self._find_order(order_id, handle)
            if order.user_id != user_id:
                raise PermissionDeniedError()
            if handle and order.payment_handle and handle != order.payment_handle:
                raise ValidationError('Payment does not belong to this order', 'payment_handle')
            if order.paid:
                return self._already_settled(order)
            if order.is_paid_by_points:
                raise ValidationError('Order is paid with points', 'payment_method')

            payment_handle = order.payment_handle or handle
            if not payment_handle:
                raise ValidationError('Order has no payment to confirm', 'payment_handle')

            status = self.gateway.confirm_charge(payment_handle)
        except SettlementError as e:
            return self._failure(e)

        if status.outcome == OUTCOME_PAID:
            return self._commit_paid_order(order, status.transaction_id)

        if status.outcome == OUTCOME_FAILED:
            order = self._record_failure(order.id, status.failure_reason or 'Payment failed')
            return {
                'success': False,
                'error': 'Payment not completed',
                'error_code': 'PAYMENT_FAILED',
                'failure_reason': order.failure_reason,
                'order': order.to_dict(),
            }

        logger.info(f"Payment for order {order.order_number} not settled yet ({status.outcome})")
        return {
            'success': False,
            'error': 'Payment is still processing',
            'error_code': 'PAYMENT_PENDING',
            'pending_reconciliation': True,
            'order': order.to_dict(),
        }

    def handle_gateway_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Apply a verified processor webhook.

        Returns:
            Dict with 'handled' plus the settlement result
        """
        if event.type not in (EVENT_CHARGE_SUCCEEDED, EVENT_CHARGE_FAILED):
            return {'handled': False, 'reason': f'Ignored event {event.raw_type}'}

        try:
            order = self._find_order(event.order_id, event.handle)
        except OrderNotFoundError:
            logger.warning(f"Webhook {event.raw_type} for unknown order (id={event.order_id}, handle={event.handle})")
            return {'handled': False, 'error': 'Order not found'}

        if event.type == EVENT_CHARGE_SUCCEEDED:
            result = self._commit_paid_order(order, event.transaction_id)
            return {'handled': True, **result}

        if order.paid or order.status != OrderStatus.PENDING.value:
            return {'handled': False, 'reason': f'Order {order.order_number} is not awaiting payment'}

        order = self._record_failure(order.id, event.failure_reason or 'Payment failed')
        logger.info(f"Payment failed for order {order.order_number}: {order.failure_reason}")
        return {'handled': True, 'success': False, 'order': order.to_dict()}

    def _claim_payment(self, order_id: int, transaction_id: Optional[str], now: datetime) -> None:
        """
        The guarded paid flip. Succeeds for exactly one caller per order.

        Raises:
            AlreadySettled: Someone else already paid, or the order left pending
        """
        result = db.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.paid.is_(False))
            .where(Order.status == OrderStatus.PENDING.value)
            .values(
                paid=True,
                paid_at=now,
                transaction_id=transaction_id,
                status=OrderStatus.CONFIRMED.value,
                confirmed_at=now,
                failure_reason=None,
            )
        )
        if result.rowcount != 1:
            raise AlreadySettled()

    def _commit_paid_order(self, order: Order, transaction_id: Optional[str]) -> Dict[str, Any]:
        """
        Single idempotent commit for processor-paid orders.

        Stock is taken even past zero (the customer has paid); coupon limits
        reached in the meantime leave the discount in place without a usage
        record. Both cases are noted on the order.
        """
        order_id = order.id
        now = datetime.utcnow()

        try:
            self._claim_payment(order_id, transaction_id, now)

            earned = points_for_total(order.total_amount)
            self.ledger.credit(
                order.user_id,
                earned,
                f'Points earned from order {order.order_number}',
                related_order_id=order_id,
            )
            order.total_points_earned = earned

            for item in order.items:
                item.stock_taken = catalog_service.decrement_stock(
                    item.item_kind, item.catalog_item_id, item.quantity, allow_oversell=True
                )
                if item.stock_taken < item.quantity:
                    order.add_internal_note(f'Oversold {item.name} x{item.quantity}; stock clamped to 0')

            if order.coupon_id:
                try:
                    self.coupons.record_usage(
                        order.coupon_id, order.user_id, order_id, order.cafe_id, order.discount_amount
                    )
                except InvalidCouponError as e:
                    logger.warning(
                        f"Coupon {order.coupon_code} not recorded for paid order {order.order_number}: {e.message}"
                    )
                    order.add_internal_note(f'Coupon {order.coupon_code} usage not recorded: {e.message}')

            order.estimated_ready_time = now + timedelta(minutes=order.estimated_prep_minutes())
            db.session.commit()
        except AlreadySettled:
            db.session.rollback()
            order = db.session.get(Order, order_id)
            if order.status == OrderStatus.CANCELLED.value:
                return self._refund_late_payment(order, transaction_id)
            return self._already_settled(order)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Commit of paid order {order_id} failed")
            return self._internal_failure()

        logger.info(f"Order {order.order_number} confirmed: +{earned} points to user {order.user_id}")
        return self._settled(order, points_earned=earned)

    def _refund_late_payment(self, order: Order, transaction_id: Optional[str]) -> Dict[str, Any]:
        """Money arrived for an order that was cancelled while unpaid: send it back."""
        if order.refund_status != RefundStatus.NONE.value:
            return self._already_settled(order)

        total = to_money(order.total_amount)
        refund = self.gateway.refund(
            order.payment_handle, total,
            reason='Payment received after cancellation',
            idempotency_key=_refund_key(order),
        )
        order.paid = True
        order.paid_at = datetime.utcnow()
        order.transaction_id = transaction_id
        self._apply_refund_result(order, refund, total, 'Payment received after cancellation')
        order.add_internal_note('Payment arrived after cancellation; refund requested')
        db.session.commit()

        logger.warning(f"Late payment on cancelled order {order.order_number}: refund {order.refund_status}")
        return self._settled(order, already_settled=True, refunded=True)

    def _record_failure(self, order_id: int, reason: str) -> Order:
        """Keep the order pending and remember why payment did not happen."""
        order = db.session.get(Order, order_id)
        order.failure_reason = (reason or 'Payment failed')[:500]
        db.session.commit()
        return order

    # ==================== Cancellation & status ====================

    def cancel_order(self, user_id: int, order_id: int, reason: str = None, is_staff: bool = False) -> Dict[str, Any]:
        """
        Cancel a pending or confirmed order.

        Paid orders get their stock back and a full refund: points-paid
        orders are re-credited, processor-paid orders refunded through the
        gateway. Points earned on the order are taken back when the balance
        still holds them.
        """
        try:
            order = self._find_order(order_id, None)
            if order.user_id != user_id and not is_staff:
                raise PermissionDeniedError()
            OrderStateMachine.assert_transition(order.status, OrderStatus.CANCELLED)

            now = datetime.utcnow()
            result = db.session.execute(
                update(Order)
                .where(Order.id == order.id)
                .where(Order.status.in_([s.value for s in OrderStateMachine.CANCELLABLE]))
                .values(status=OrderStatus.CANCELLED.value, cancelled_at=now)
            )
            if result.rowcount != 1:
                db.session.rollback()
                order = db.session.get(Order, order_id)
                raise InvalidStatusTransitionError('order', order.status, OrderStatus.CANCELLED.value)
            db.session.refresh(order)

            reason = reason or 'Cancelled by customer'
            order.add_internal_note(f'Cancelled: {reason}')
            needs_gateway_refund = False

            if order.paid:
                for item in order.items:
                    if item.stock_taken:
                        catalog_service.restore_stock(item.item_kind, item.catalog_item_id, item.stock_taken)
                total = to_money(order.total_amount)
                order.refund_amount = total
                order.refund_reason = reason

                if order.is_paid_by_points:
                    self.ledger.credit(
                        order.user_id,
                        floor_points(total),
                        f'Refund for cancelled order {order.order_number}',
                        related_order_id=order.id,
                    )
                    order.refund_status = RefundStatus.PROCESSED.value
                    order.refund_processed_at = now
                elif total > ZERO and order.payment_handle:
                    order.refund_status = RefundStatus.PENDING.value
                    needs_gateway_refund = True
                else:
                    order.refund_status = RefundStatus.PROCESSED.value
                    order.refund_processed_at = now

                self._reverse_earned_points(order)

            db.session.commit()
        except SettlementError as e:
            db.session.rollback()
            return self._failure(e)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Cancellation of order {order_id} failed")
            return self._internal_failure()

        if needs_gateway_refund:
            refund = self.gateway.refund(
                order.payment_handle, to_money(order.refund_amount),
                reason=order.refund_reason,
                idempotency_key=_refund_key(order),
            )
            self._apply_refund_result(order, refund, to_money(order.refund_amount), order.refund_reason)
            db.session.commit()

        logger.info(f"Order {order.order_number} cancelled (refund: {order.refund_status})")
        return {'success': True, 'order': order.to_dict()}

    def _reverse_earned_points(self, order: Order) -> None:
        earned = order.total_points_earned or 0
        if order.is_paid_by_points or earned <= 0:
            return
        try:
            self.ledger.debit(
                order.user_id, earned,
                f'Points reversed for cancelled order {order.order_number}',
                related_order_id=order.id,
            )
            order.total_points_earned = 0
        except InsufficientPointsError:
            order.add_internal_note(f'Could not reverse {earned} earned points: balance already spent')

    @staticmethod
    def _apply_refund_result(order: Order, refund, amount, reason: str) -> None:
        order.refund_status = {
            REFUND_PROCESSED: RefundStatus.PROCESSED.value,
            REFUND_FAILED: RefundStatus.FAILED.value,
        }.get(refund.status, RefundStatus.PENDING.value)
        order.refund_amount = amount
        order.refund_reason = reason
        order.refund_id = refund.refund_id or order.refund_id
        order.refund_failure_reason = refund.failure_reason
        if refund.status == REFUND_PROCESSED:
            order.refund_processed_at = datetime.utcnow()

    def advance_status(self, order_id: int, new_status: str, is_staff: bool = True, reason: str = None) -> Dict[str, Any]:
        """Staff moves an order along the preparation line."""
        if new_status == OrderStatus.CANCELLED.value:
            order = db.session.get(Order, order_id)
            return self.cancel_order(order.user_id if order else None, order_id, reason or 'Cancelled by staff', is_staff=True)

        try:
            if not is_staff:
                raise PermissionDeniedError()
            order = self._find_order(order_id, None)
            current = order.status
            OrderStateMachine.assert_transition(current, new_status, manual=True)

            result = db.session.execute(
                update(Order)
                .where(Order.id == order.id)
                .where(Order.status == current)
                .values(status=new_status)
            )
            if result.rowcount != 1:
                db.session.rollback()
                order = db.session.get(Order, order_id)
                raise InvalidStatusTransitionError('order', order.status, new_status)
            db.session.commit()
        except SettlementError as e:
            db.session.rollback()
            return self._failure(e)

        logger.info(f"Order {order.order_number}: {current} -> {new_status}")
        return {'success': True, 'order': order.to_dict()}

    # ==================== Reconciliation ====================

    def reconcile_pending(self, older_than_minutes: int = 5, limit: int = 100) -> Dict[str, Any]:
        """
        Re-ask the processor about pending orders whose outcome never arrived
        (client closed the app, webhook lost, timeout at checkout), then about
        refunds on cancelled orders that are still pending.

        Returns:
            Counts of settled, failed and still-pending orders, and of
            processed, failed and still-pending refunds
        """
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        orders = (
            Order.query
            .filter(Order.status == OrderStatus.PENDING.value)
            .filter(Order.paid.is_(False))
            .filter(Order.payment_handle.isnot(None))
            .filter(Order.created_at <= cutoff)
            .order_by(Order.created_at.asc())
            .limit(limit)
            .all()
        )

        summary = {'checked': 0, 'settled': 0, 'failed': 0, 'pending': 0, 'errors': []}
        for order in orders:
            summary['checked'] += 1
            try:
                status = self.gateway.confirm_charge(order.payment_handle)
            except GatewayError as e:
                summary['errors'].append({'order_number': order.order_number, 'error': e.message})
                continue

            if status.outcome == OUTCOME_PAID:
                result = self._commit_paid_order(order, status.transaction_id)
                if result['success']:
                    summary['settled'] += 1
                else:
                    summary['errors'].append({'order_number': order.order_number, 'error': result['error']})
            elif status.outcome == OUTCOME_FAILED:
                self._record_failure(order.id, status.failure_reason or 'Payment failed')
                summary['failed'] += 1
            else:
                summary['pending'] += 1

        summary.update(self._reconcile_refunds(cutoff, limit, summary['errors']))
        logger.info(f"Reconciliation: {summary}")
        return summary

    def _reconcile_refunds(self, cutoff: datetime, limit: int, errors: List[Dict[str, str]]) -> Dict[str, int]:
        """Resolve refunds left pending by a slow processor or a lost response."""
        orders = (
            Order.query
            .filter(Order.status == OrderStatus.CANCELLED.value)
            .filter(Order.refund_status == RefundStatus.PENDING.value)
            .filter(Order.payment_handle.isnot(None))
            .filter(Order.cancelled_at <= cutoff)
            .order_by(Order.cancelled_at.asc())
            .limit(limit)
            .all()
        )

        counts = {'refunds_checked': 0, 'refunds_processed': 0, 'refunds_failed': 0, 'refunds_pending': 0}
        for order in orders:
            counts['refunds_checked'] += 1
            amount = to_money(order.refund_amount or order.total_amount)
            try:
                if order.refund_id:
                    refund = self.gateway.refund_status(order.refund_id)
                else:
                    # No answer was ever recorded; same key, so at most one refund
                    refund = self.gateway.refund(
                        order.payment_handle, amount,
                        reason=order.refund_reason,
                        idempotency_key=_refund_key(order),
                    )
            except GatewayError as e:
                errors.append({'order_number': order.order_number, 'error': e.message})
                continue

            self._apply_refund_result(order, refund, amount, order.refund_reason)
            db.session.commit()
            counts[{
                REFUND_PROCESSED: 'refunds_processed',
                REFUND_FAILED: 'refunds_failed',
            }.get(refund.status, 'refunds_pending')] += 1
            if refund.status == REFUND_FAILED:
                logger.error(f"Refund for order {order.order_number} failed: {refund.failure_reason}")

        return counts

    # ==================== Queries ====================

    def get_order(self, user_id: int, order_id: int, is_staff: bool = False) -> Dict[str, Any]:
        try:
            order = self._find_order(order_id, None)
            if order.user_id != user_id and not is_staff:
                raise PermissionDeniedError()
        except SettlementError as e:
            return self._failure(e)
        return {'success': True, 'order': order.to_dict(include_internal=is_staff)}

    def list_orders(self, user_id: int, status: str = None, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        query = Order.query.filter_by(user_id=user_id)
        if status:
            query = query.filter(Order.status == status)
        total = query.count()
        orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
        return {
            'success': True,
            'orders': [o.to_dict() for o in orders],
            'total': total,
            'limit': limit,
            'offset': offset,
        }

    # ==================== Helpers ====================

    @staticmethod
    def _find_order(order_id=None, handle: str = None) -> Order:
        order = None
        if order_id is not None:
            try:
                order = db.session.get(Order, int(order_id))
            except (TypeError, ValueError):
                order = None
        if order is None and handle:
            order = Order.query.filter_by(payment_handle=handle).first()
        if order is None:
            raise OrderNotFoundError(order_id or handle)
        return order

    @staticmethod
    def _already_settled(order: Order) -> Dict[str, Any]:
        return SettlementService._settled(order, already_settled=True)

    @staticmethod
    def _settled(order: Order, **extra) -> Dict[str, Any]:
        """Success result with the headline order fields at the top level."""
        return {
            'success': True,
            'order_number': order.order_number,
            'total_amount': float(order.total_amount or 0),
            'total_points_earned': order.total_points_earned or 0,
            'estimated_ready_time': order.estimated_ready_time.isoformat() if order.estimated_ready_time else None,
            'order': order.to_dict(),
            **extra,
        }

    @staticmethod
    def _failure(error: SettlementError, order: Order = None) -> Dict[str, Any]:
        result = {'success': False, 'error': error.message, 'error_code': error.code}
        if order is not None:
            result['order'] = order.to_dict()
        return result

    @staticmethod
    def _internal_failure() -> Dict[str, Any]:
        return {'success': False, 'error': GENERIC_ERROR_MESSAGE, 'error_code': 'INTERNAL_ERROR'}
