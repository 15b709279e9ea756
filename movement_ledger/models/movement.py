"""
Movement Ledger Model - one immutable row per processed inventory movement
"""
import enum

from sqlalchemy import (
    BigInteger, CheckConstraint, Column, DateTime, DDL, Index, Integer, String, Text, Uuid, event, inspect,
)

from movement_ledger.core import Base
from movement_ledger.core.exceptions import ImmutableLedgerError
from .base import TimestampMixin


class MovementKind(str, enum.Enum):
    ENTRY = "entrada"
    EXIT = "salida"
    ADJUSTMENT = "ajuste"


class MovementOrigin(str, enum.Enum):
    API = "api"
    OCR = "ocr"
    MANUAL = "manual"
    SYSTEM = "sistema"


KIND_VALUES = tuple(k.value for k in MovementKind)
ORIGIN_VALUES = tuple(o.value for o in MovementOrigin)


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Movement(Base, TimestampMixin):
    """Inventory movement ledger row"""
    __tablename__ = "movements"

    id = Column(Integer, primary_key=True, autoincrement=True)

    product_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    sku_id = Column(Uuid(as_uuid=True), index=True)
    request_id = Column(Uuid(as_uuid=True), index=True)
    document_id = Column(Uuid(as_uuid=True), index=True)

    kind = Column(String(20), nullable=False, index=True)  # entrada, salida, ajuste
    quantity = Column(BigInteger, nullable=False)
    quantity_before = Column(BigInteger, nullable=False)
    quantity_after = Column(BigInteger, nullable=False)
    moved_at = Column(DateTime(timezone=True), nullable=False, index=True)

    user_id = Column(String(255))
    reason = Column(Text)
    client_account_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    origin = Column(String(20), nullable=False, default=MovementOrigin.API.value, index=True)

    encrypted_payload = Column(Text, nullable=False)
    idempotency_key = Column(String(128), nullable=False, unique=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_movements_quantity_positive"),
        CheckConstraint("quantity_before >= 0", name="ck_movements_before_non_negative"),
        CheckConstraint("quantity_after >= 0", name="ck_movements_after_non_negative"),
        CheckConstraint(_in_list("kind", KIND_VALUES), name="ck_movements_kind"),
        CheckConstraint(_in_list("origin", ORIGIN_VALUES), name="ck_movements_origin"),
        CheckConstraint(
            "kind <> 'salida' OR quantity_before >= quantity",
            name="ck_movements_exit_covered",
        ),
        Index("ix_movements_product_moved_at", "product_id", "moved_at"),
        Index("ix_movements_client_moved_at", "client_account_id", "moved_at"),
    )

    def __repr__(self):
        return f"<Movement {self.id} {self.kind} {self.quantity} product={self.product_id}>"


# updated_at is maintained by the database on PostgreSQL
_updated_at_function = DDL("""
CREATE OR REPLACE FUNCTION movements_set_updated_at()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = CURRENT_TIMESTAMP;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
""")

_updated_at_trigger = DDL("""
DROP TRIGGER IF EXISTS movements_updated_at ON movements;
CREATE TRIGGER movements_updated_at
    BEFORE UPDATE ON movements
    FOR EACH ROW
    EXECUTE FUNCTION movements_set_updated_at();
""")

event.listen(Movement.__table__, "after_create", _updated_at_function.execute_if(dialect="postgresql"))
event.listen(Movement.__table__, "after_create", _updated_at_trigger.execute_if(dialect="postgresql"))


@event.listens_for(Movement, "before_update")
def _reject_movement_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        attr.key for attr in state.attrs
        if attr.key != "updated_at" and attr.history.has_changes()
    ]
    if changed:
        raise ImmutableLedgerError(
            f"Movement {target.id} is immutable",
            {"fields": changed},
        )


@event.listens_for(Movement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"Movement {target.id} cannot be deleted")
