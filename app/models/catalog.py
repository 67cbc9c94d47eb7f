"""
Catalog models: retail products and café menu items.

The catalog itself is managed elsewhere; the settlement engine only resolves
items, prices customizations and moves stock. Customization options are JSON:
    {
        "sizes": [{"name": "Grande", "price": 5.25, "points_earned": 6}],
        "milk_options": [{"name": "Oat", "extra_charge": 0.70}],
        "extras": [{"name": "Extra Shot", "price": 0.90}]
    }
"""
import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


class ProductCategory(str, Enum):
    COFFEE = 'coffee'
    TEA = 'tea'
    PASTRY = 'pastry'
    FOOD = 'food'
    MERCHANDISE = 'merchandise'
    GIFT_CARD = 'gift_card'


class MenuItemType(str, Enum):
    DRINK = 'drink'
    FOOD = 'food'


def default_points(price) -> int:
    """Points shown on an item when none are configured: one per started dollar."""
    return int(math.ceil(Decimal(str(price or 0))))


class Product(db.Model):
    """Retail product with tracked stock."""
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    category = db.Column(db.String(30), nullable=False)  # ProductCategory
    price = db.Column(db.Numeric(10, 2), nullable=False)
    points_earned = db.Column(db.Integer)

    in_stock = db.Column(db.Boolean, default=True)
    stock_quantity = db.Column(db.Integer, nullable=False, default=100)

    customization = db.Column(db.JSON, default=dict)
    available_at = db.Column(db.JSON, default=list)  # Cafe ids, empty = everywhere
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('stock_quantity >= 0', name='stock_non_negative'),
    )

    def __repr__(self):
        return f'<Product {self.name}: ${self.price}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'price': float(self.price),
            'points_earned': self.points_earned if self.points_earned is not None else default_points(self.price),
            'in_stock': self.in_stock,
            'stock_quantity': self.stock_quantity,
            'customization': self.customization or {},
        }


class MenuItem(db.Model):
    """
    Café menu item, either a drink or food.

    Menu items are made to order so stock is usually untracked
    (stock_quantity NULL); availability is the in_stock flag.
    """
    __tablename__ = 'menu_items'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    item_type = db.Column(db.String(20), nullable=False)  # MenuItemType
    category = db.Column(db.String(50))  # espresso, cold_brew, sandwich, ...
    price = db.Column(db.Numeric(10, 2), nullable=False)
    points_earned = db.Column(db.Integer)

    in_stock = db.Column(db.Boolean, default=True)
    stock_quantity = db.Column(db.Integer)

    customization = db.Column(db.JSON, default=dict)
    available_at = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            'stock_quantity IS NULL OR stock_quantity >= 0',
            name='stock_non_negative'
        ),
    )

    def __repr__(self):
        return f'<MenuItem {self.item_type} {self.name}: ${self.price}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'item_type': self.item_type,
            'category': self.category,
            'price': float(self.price),
            'points_earned': self.points_earned if self.points_earned is not None else default_points(self.price),
            'in_stock': self.in_stock,
            'stock_quantity': self.stock_quantity,
            'customization': self.customization or {},
        }
