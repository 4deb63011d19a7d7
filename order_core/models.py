import enum
import uuid

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SUPPORT = "support"
    SELLER = "seller"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    PAYPAL = "paypal"
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


OrderStatusType = _enum(OrderStatus, "order_status")


class User(Base):
    __tablename__ = "users"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(_enum(UserRole, "user_role"), nullable=False, default=UserRole.CUSTOMER)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    customer = relationship("Customer", back_populates="user", uselist=False)


class Customer(Base):
    __tablename__ = "customers"
    user_id = Column(BigIntPK, ForeignKey("users.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(30))
    date_of_birth = Column(Date)
    loyalty_points = Column(Integer, nullable=False, default=0)
    user = relationship("User", back_populates="customer")
    addresses = relationship("Address", back_populates="customer")


class Address(Base):
    __tablename__ = "addresses"
    __table_args__ = (UniqueConstraint("customer_id", "label"),)
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    customer_id = Column(BigIntPK, ForeignKey("customers.user_id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)
    label = Column(String(50), nullable=False)
    street = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100))
    postal_code = Column(String(30))
    country = Column(String(100), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    customer = relationship("Customer", back_populates="addresses")


class Supplier(Base):
    __tablename__ = "suppliers"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    contact_email = Column(String(255))
    contact_phone = Column(String(50))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))


class Category(Base):
    __tablename__ = "categories"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(150), nullable=False, unique=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL", onupdate="CASCADE"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))


class ProductCategory(Base):
    __tablename__ = "product_categories"
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price"),
        Index("idx_products_name", "name"),
    )
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Numeric(12, 2), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    supplier_id = Column(BigIntPK, ForeignKey("suppliers.id", ondelete="SET NULL", onupdate="CASCADE"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    supplier = relationship("Supplier")
    categories = relationship("Category", secondary="product_categories", viewonly=True)
    inventory = relationship("Inventory", back_populates="product", uselist=False)
    images = relationship("ProductImage", back_populates="product")


class Inventory(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved"),
        CheckConstraint("reserved <= quantity", name="ck_inventory_reserved_le_quantity"),
        Index("idx_inventory_quantity", "quantity"),
    )
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    quantity = Column(Integer, nullable=False, default=0, server_default="0")
    reserved = Column(Integer, nullable=False, default=0, server_default="0")
    last_restocked = Column(TIMESTAMP(timezone=True), nullable=True)
    product = relationship("Product", back_populates="inventory")


class ProductImage(Base):
    __tablename__ = "product_images"
    __table_args__ = (UniqueConstraint("product_id", "url"),)
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)
    url = Column(String(1024), nullable=False)
    alt_text = Column(String(255))
    sort_order = Column(Integer, nullable=False, default=0)
    is_primary = Column(Boolean, nullable=False, default=False)
    product = relationship("Product", back_populates="images")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal"),
        CheckConstraint("shipping_cost >= 0", name="ck_orders_shipping_cost"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount_amount"),
        CheckConstraint("total >= 0", name="ck_orders_total"),
        Index("idx_orders_customer", "customer_id"),
    )
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_number = Column(String(50), nullable=False, unique=True)
    customer_id = Column(BigIntPK, ForeignKey("customers.user_id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False)
    billing_address_id = Column(BigIntPK, ForeignKey("addresses.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False)
    shipping_address_id = Column(BigIntPK, ForeignKey("addresses.id", ondelete="RESTRICT", onupdate="CASCADE"), nullable=False)
    status = Column(OrderStatusType, nullable=False, default=OrderStatus.PENDING)
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    placed_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.product_id")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    history = relationship("StatusHistoryEntry", back_populates="order", order_by="StatusHistoryEntry.id")
    coupons = relationship("Coupon", secondary="order_coupons", viewonly=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price"),
        CheckConstraint("line_total >= 0", name="ck_order_items_line_total"),
    )
    order_id = Column(BigIntPK, ForeignKey("orders.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="RESTRICT", onupdate="CASCADE"), primary_key=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)
    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_payments_amount"),)
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigIntPK, ForeignKey("orders.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)
    payment_reference = Column(String(255), nullable=False, unique=True)
    method = Column(_enum(PaymentMethod, "payment_method"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    order = relationship("Order", back_populates="payments")


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating"),)
    customer_id = Column(BigIntPK, ForeignKey("customers.user_id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    product_id = Column(BigIntPK, ForeignKey("products.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    rating = Column(Integer, nullable=False)
    title = Column(String(255))
    body = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (CheckConstraint("discount_value >= 0", name="ck_coupons_discount_value"),)
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True)
    description = Column(String(255))
    discount_type = Column(_enum(DiscountType, "discount_type"), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    usage_limit = Column(Integer, nullable=True)  # NULL = unlimited
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))


class OrderCoupon(Base):
    __tablename__ = "order_coupons"
    order_id = Column(BigIntPK, ForeignKey("orders.id", ondelete="CASCADE", onupdate="CASCADE"), primary_key=True)
    coupon_id = Column(BigIntPK, ForeignKey("coupons.id", ondelete="RESTRICT", onupdate="CASCADE"), primary_key=True)


class StatusHistoryEntry(Base):
    __tablename__ = "order_status_history"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigIntPK, ForeignKey("orders.id", ondelete="CASCADE", onupdate="CASCADE"), nullable=False)
    previous_status = Column(OrderStatusType, nullable=True)
    new_status = Column(OrderStatusType, nullable=False)
    changed_by_user_id = Column(BigIntPK, ForeignKey("users.id", ondelete="SET NULL", onupdate="CASCADE"), nullable=True)
    changed_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    note = Column(String(512))
    order = relationship("Order", back_populates="history")


class EventOutbox(Base):
    __tablename__ = "event_outbox"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False)
    event_id = Column(Uuid(as_uuid=True), nullable=False, default=uuid.uuid4)
    occurred_at = Column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    version = Column(Integer, nullable=False, server_default="1")
    payload = Column(JSON, nullable=False)
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, server_default="NEW")
