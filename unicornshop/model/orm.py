from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    Index,
)


Base = declarative_base()

# payment status; the last three are terminal
PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"
TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELED})


# ----------------------------
# ORM models
# ----------------------------
class Unicorn(Base):
    __tablename__ = "unicorns"
    # insertion order; "oldest first" reads sort on this
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    color_name = Column(String, nullable=False)
    # NULL when the color is not in the palette
    color_hex = Column(String, nullable=True)
    position_x = Column(Float, nullable=False)
    position_y = Column(Float, nullable=False)
    position_z = Column(Float, nullable=False)
    initial_rotation = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)
    payment_intent_id = Column(String, nullable=False, index=True)
    user_session = Column(String, nullable=False, index=True)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    # NULL until the gateway has issued an id
    payment_intent_id = Column(String, nullable=True, unique=True)
    base_name = Column(String, nullable=False)
    total_unicorns = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)

    # pending | succeeded | failed | canceled
    status = Column(String, nullable=False, default=PENDING)
    unicorn_orders = Column(Text, nullable=False)  # JSON list
    user_session = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created_at", "status", "created_at"),
    )


class StatsSnapshot(Base):
    __tablename__ = "stats"
    id = Column(Integer, primary_key=True, autoincrement=True)
    total_unicorns = Column(Integer, nullable=False)
    total_revenue = Column(Integer, nullable=False)
    unique_customers = Column(Integer, nullable=False)
    space_radius = Column(Float, nullable=False)
    recorded_at = Column(Float, nullable=False)
