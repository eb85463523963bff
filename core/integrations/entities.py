"""Normalized entity models.

Every provider record ends up as one of these pydantic models. Fields the
provider did not report stay unset (``model_fields_set``) so an upsert only
overwrites what was actually observed. Money is integer minor units.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError

from core.integrations.errors import TransformError
from core.integrations.types import EntityType


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
MinorUnits = int


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class NormalizedEntity(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    external_id: str = Field(..., min_length=1)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    @property
    def entity_type(self) -> EntityType:
        return EntityType(self.kind)  # type: ignore[attr-defined]

    def reported_fields(self) -> dict[str, Any]:
        """JSON-safe dict of the fields the provider actually reported."""
        data = self.model_dump(mode="json", exclude_unset=True)
        data.pop("kind", None)
        data["external_id"] = self.external_id
        return data


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

class NormalizedCustomer(NormalizedEntity):
    kind: Literal["customer"] = "customer"
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class NormalizedLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int = 0
    price: MinorUnits = 0
    total_discount: MinorUnits = 0


class NormalizedOrder(NormalizedEntity):
    kind: Literal["order"] = "order"
    customer_id: Optional[str] = None
    status: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    currency: Optional[str] = None
    total_price: Optional[MinorUnits] = None
    subtotal_price: Optional[MinorUnits] = None
    total_tax: Optional[MinorUnits] = None
    total_discount: Optional[MinorUnits] = None
    line_items: list[NormalizedLineItem] = Field(default_factory=list)


class NormalizedVariant(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str
    sku: Optional[str] = None
    price: MinorUnits = 0
    compare_at_price: Optional[MinorUnits] = None
    inventory_quantity: Optional[int] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None


class NormalizedProduct(NormalizedEntity):
    kind: Literal["product"] = "product"
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["active", "draft", "archived"]] = None
    vendor: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    variants: list[NormalizedVariant] = Field(default_factory=list)


class NormalizedSubscription(NormalizedEntity):
    kind: Literal["subscription"] = "subscription"
    customer_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[Literal["active", "trialing", "past_due", "canceled", "paused"]] = None
    currency: Optional[str] = None
    amount: Optional[MinorUnits] = None
    interval: Optional[Literal["day", "week", "month", "year"]] = None
    interval_count: Optional[int] = None
    current_period_start: Optional[UtcDatetime] = None
    current_period_end: Optional[UtcDatetime] = None
    canceled_at: Optional[UtcDatetime] = None


class NormalizedInvoice(NormalizedEntity):
    kind: Literal["invoice"] = "invoice"
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[Literal["draft", "open", "paid", "void", "uncollectible"]] = None
    currency: Optional[str] = None
    amount_due: Optional[MinorUnits] = None
    amount_paid: Optional[MinorUnits] = None
    due_date: Optional[UtcDatetime] = None
    paid_at: Optional[UtcDatetime] = None


AnyEntity = Annotated[
    Union[
        NormalizedCustomer,
        NormalizedOrder,
        NormalizedProduct,
        NormalizedSubscription,
        NormalizedInvoice,
    ],
    Field(discriminator="kind"),
]

ENTITY_MODELS: dict[EntityType, type[NormalizedEntity]] = {
    EntityType.CUSTOMER: NormalizedCustomer,
    EntityType.ORDER: NormalizedOrder,
    EntityType.PRODUCT: NormalizedProduct,
    EntityType.SUBSCRIPTION: NormalizedSubscription,
    EntityType.INVOICE: NormalizedInvoice,
}


def build_entity(
    entity_type: EntityType,
    fields: dict[str, Any],
    record_id: Optional[str] = None,
) -> NormalizedEntity:
    """Validate mapped fields into the entity model for ``entity_type``.

    Keys the model does not declare are folded into ``metadata``.
    Validation failures raise TransformError.
    """
    model = ENTITY_MODELS[entity_type]
    known = set(model.model_fields) - {"kind"}
    values: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in fields.items():
        if key in known:
            values[key] = value
        else:
            extra[key] = value
    if extra:
        metadata = dict(values.get("metadata") or {})
        metadata.update(extra)
        values["metadata"] = metadata

    if values.get("external_id") in (None, ""):
        raise TransformError(
            f"{entity_type.value} record has no external_id",
            field="external_id",
            record_id=record_id,
        )
    values["external_id"] = str(values["external_id"])

    try:
        return model(**values)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ()))
        raise TransformError(
            f"{entity_type.value} {loc}: {first.get('msg')}",
            field=loc or None,
            record_id=record_id or values["external_id"],
        ) from e
