"""
Catalog lookup for the settlement engine.

Resolves cart references to products or menu items, prices customizations and
moves stock with guarded SQL updates so concurrent orders can never drive a
tracked quantity below zero.
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import select, update

from ..extensions import db
from ..models.catalog import MenuItem, Product
from ..models.order import ItemKind
from ..utils.exceptions import InsufficientStockError, ItemNotFoundError, ValidationError
from ..utils.money import to_money

logger = logging.getLogger(__name__)

# Hints a client may send with a cart line
PRODUCT_HINTS = {'product'}
MENU_HINTS = {'menu_item', 'menuitem', 'drink', 'food', 'drinkitem', 'fooditem'}


@dataclass
class CatalogEntry:
    """A resolved catalog item, tagged with the table it came from."""
    kind: ItemKind
    item: Union[Product, MenuItem]

    @property
    def id(self) -> int:
        return self.item.id

    @property
    def name(self) -> str:
        return self.item.name

    @property
    def price(self) -> Decimal:
        return to_money(self.item.price)

    @property
    def category(self) -> Optional[str]:
        return self.item.category

    @property
    def in_stock(self) -> bool:
        return bool(self.item.in_stock)

    @property
    def stock_quantity(self) -> Optional[int]:
        return self.item.stock_quantity

    @property
    def tracks_stock(self) -> bool:
        return self.item.stock_quantity is not None

    @property
    def customization(self) -> Dict[str, Any]:
        return self.item.customization or {}

    @property
    def points_per_unit(self) -> int:
        if self.item.points_earned is not None:
            return self.item.points_earned
        return int(math.ceil(self.price))

    def has_stock_for(self, quantity: int) -> bool:
        if not self.in_stock:
            return False
        return not self.tracks_stock or self.stock_quantity >= quantity


def _model_for(kind) -> type:
    return Product if ItemKind(kind) == ItemKind.PRODUCT else MenuItem


def _entry_for_menu_item(item: MenuItem) -> CatalogEntry:
    kind = ItemKind.FOOD if item.item_type == 'food' else ItemKind.DRINK
    return CatalogEntry(kind=kind, item=item)


def resolve(item_ref, item_kind: str = None) -> CatalogEntry:
    """
    Find the catalog item a cart line refers to.

    Products are tried first, then menu items, unless the caller says which
    catalog the reference belongs to.

    Args:
        item_ref: Catalog item id
        item_kind: Optional hint ('product', 'menu_item', 'drink', 'food')

    Raises:
        ItemNotFoundError: No active item with that id
    """
    try:
        item_id = int(item_ref)
    except (TypeError, ValueError):
        raise ItemNotFoundError(item_ref)

    hint = (item_kind or '').lower()

    if hint not in MENU_HINTS:
        product = db.session.get(Product, item_id)
        if product and product.is_active:
            return CatalogEntry(kind=ItemKind.PRODUCT, item=product)
        if hint in PRODUCT_HINTS:
            raise ItemNotFoundError(item_ref)

    menu_item = db.session.get(MenuItem, item_id)
    if menu_item and menu_item.is_active:
        return _entry_for_menu_item(menu_item)

    raise ItemNotFoundError(item_ref)


def _find_option(options, name) -> Optional[dict]:
    if not name:
        return None
    wanted = str(name).strip().lower()
    for option in options or []:
        if str(option.get('name', '')).strip().lower() == wanted:
            return option
    return None


def _extra_names(customizations: Dict[str, Any]):
    names = []
    for extra in customizations.get('extras') or []:
        if isinstance(extra, dict):
            extra = extra.get('name')
        if extra:
            names.append(extra)
    return names


def price_with_customizations(entry: CatalogEntry, customizations: Optional[Dict[str, Any]]) -> Decimal:
    """
    Unit price of an item with the chosen size, milk and extras.

    A known size tier replaces the base price; milk (not on food) and each
    known extra add to it. Unknown option names are ignored.
    """
    customizations = customizations or {}
    options = entry.customization
    price = entry.price

    size = _find_option(options.get('sizes'), customizations.get('size'))
    if size and size.get('price') is not None:
        price = to_money(size['price'])

    if entry.kind != ItemKind.FOOD:
        milk = _find_option(options.get('milk_options'), customizations.get('milk'))
        if milk:
            price += to_money(milk.get('extra_charge', 0))

    for extra_name in _extra_names(customizations):
        extra = _find_option(options.get('extras'), extra_name)
        if extra:
            price += to_money(extra.get('price', 0))

    return to_money(price)


def points_with_customizations(entry: CatalogEntry, customizations: Optional[Dict[str, Any]]) -> int:
    """Per-unit points shown on a line: the size tier's points, else the item's."""
    size = _find_option(entry.customization.get('sizes'), (customizations or {}).get('size'))
    if size and size.get('points_earned') is not None:
        return int(size['points_earned'])
    return entry.points_per_unit


def check_quantity(quantity) -> int:
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError('Quantity must be a whole number', 'quantity')
    if quantity < 1:
        raise ValidationError('Quantity must be at least 1', 'quantity')
    return quantity


def decrement_stock(kind, item_id: int, quantity: int, allow_oversell: bool = False) -> int:
    """
    Take quantity units out of stock in one guarded UPDATE.

    Runs inside the caller's transaction; nothing is committed here.

    Args:
        kind: ItemKind of the line
        item_id: Catalog id
        quantity: Units sold
        allow_oversell: Clamp to zero instead of raising when the guard fails.
            Used once a processor payment has already been captured.

    Returns:
        Units actually taken: the full quantity (also for untracked stock),
        or what was left when stock was clamped to zero.

    Raises:
        InsufficientStockError: Guard failed and oversell is not allowed
    """
    model = _model_for(kind)
    result = db.session.execute(
        update(model)
        .where(model.id == item_id)
        .where(model.stock_quantity.is_not(None))
        .where(model.stock_quantity >= quantity)
        .values(stock_quantity=model.stock_quantity - quantity)
    )
    if result.rowcount == 1:
        return quantity

    current = db.session.execute(
        select(model.stock_quantity).where(model.id == item_id)
    ).scalar_one_or_none()
    if current is None:
        # Untracked (or removed from the catalog since checkout)
        return quantity

    if not allow_oversell:
        raise InsufficientStockError(f'{model.__name__} {item_id}', current, quantity)

    db.session.execute(
        update(model).where(model.id == item_id).values(stock_quantity=0)
    )
    logger.warning(
        f"Oversold {model.__name__} {item_id}: wanted {quantity}, had {current}; stock clamped to 0"
    )
    return max(current, 0)


def restore_stock(kind, item_id: int, quantity: int) -> None:
    """Put units back after a cancellation. Untracked items are skipped."""
    model = _model_for(kind)
    db.session.execute(
        update(model)
        .where(model.id == item_id)
        .where(model.stock_quantity.is_not(None))
        .values(stock_quantity=model.stock_quantity + quantity)
    )
