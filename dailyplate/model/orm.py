from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# payment status
PENDING = "PENDING"
PAID = "PAID"
CANCELED = "CANCELED"
PAYMENT_STATUSES = (PENDING, PAID, CANCELED)

# delivery status, independent of payment status
DELIVERY_NEW = "NEW"
DELIVERY_IN_TRANSIT = "IN_TRANSIT"
DELIVERY_DELIVERED = "DELIVERED"
DELIVERY_FAILED = "FAILED"
DELIVERY_STATUSES = (
    DELIVERY_NEW, DELIVERY_IN_TRANSIT, DELIVERY_DELIVERED, DELIVERY_FAILED
)


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    nome = Column(String, nullable=False)
    preco = Column(Integer, nullable=False)  # cents (BRL)
    ativo = Column(Boolean, nullable=False, default=True)
    image_url = Column(String, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)

    cidade = Column(String, nullable=False)
    dia_semana = Column(Integer, nullable=False)  # 1..7
    cep = Column(String, nullable=False)
    rua = Column(String, nullable=False)
    numero = Column(String, nullable=False)
    complemento = Column(String, nullable=False, default="")

    # cents; total = subtotal + frete, fixed at creation
    subtotal = Column(Integer, nullable=False)
    frete = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)

    # PENDING | PAID | CANCELED
    status = Column(String, nullable=False, default=PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    mp_preference_id = Column(String, nullable=True)
    mp_payment_id = Column(String, nullable=True)

    # NEW | IN_TRANSIT | DELIVERED | FAILED
    delivery_status = Column(String, nullable=False, default=DELIVERY_NEW)
    delivery_notes = Column(String, nullable=False, default="")
    delivered_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("orders_status_day_idx", "status", "dia_semana"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantidade = Column(Integer, nullable=False)
    preco_unit = Column(Integer, nullable=False)  # cents, captured at checkout
    subtotal = Column(Integer, nullable=False)  # cents


class DailyCapacity(Base):
    __tablename__ = "daily_capacity"
    id = Column(Integer, primary_key=True, autoincrement=True)
    dia_semana = Column(Integer, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    limite_total = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("dia_semana", "product_id"),
    )


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)  # auth provider user id
    nome = Column(String, nullable=True)
    telefone = Column(String, nullable=True)
    role = Column(String, nullable=False, default="customer")


class RouteDay(Base):
    __tablename__ = "route_days"
    id = Column(Integer, primary_key=True, autoincrement=True)
    cidade = Column(String, nullable=False)
    dia_semana = Column(Integer, nullable=False)
    ativo = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=True)
