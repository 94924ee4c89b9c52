"""Quest metric parameters as a tagged union.

Each metric type carries its own parameter model. The persisted form is the
``metric_type`` column plus a JSON object of parameters; ``parse_metric``
joins the two back into the matching variant and rejects shape mismatches.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class MetricType(str, Enum):
    CATEGORY_SPEND_CAP = "CATEGORY_SPEND_CAP"
    MERCHANT_SPEND_CAP = "MERCHANT_SPEND_CAP"
    NO_MERCHANT_CHARGE = "NO_MERCHANT_CHARGE"
    TRANSFER_AMOUNT = "TRANSFER_AMOUNT"


class _MetricBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def params(self) -> dict[str, Any]:
        """Parameters without the type tag, as stored in ``metric_params``."""
        return self.model_dump(mode="json", exclude={"type"})


class CategorySpendCap(_MetricBase):
    type: Literal["CATEGORY_SPEND_CAP"] = "CATEGORY_SPEND_CAP"
    category: str = Field(min_length=1)
    cap: float = Field(ge=0)


class MerchantSpendCap(_MetricBase):
    type: Literal["MERCHANT_SPEND_CAP"] = "MERCHANT_SPEND_CAP"
    merchant_key: str = Field(min_length=1)
    cap: float = Field(ge=0)


class NoMerchantCharge(_MetricBase):
    type: Literal["NO_MERCHANT_CHARGE"] = "NO_MERCHANT_CHARGE"
    merchant_key: str = Field(min_length=1)


class TransferAmount(_MetricBase):
    type: Literal["TRANSFER_AMOUNT"] = "TRANSFER_AMOUNT"
    target_amount: float = Field(gt=0)


MetricParams = Annotated[
    CategorySpendCap | MerchantSpendCap | NoMerchantCharge | TransferAmount,
    Field(discriminator="type"),
]

_METRIC_ADAPTER: TypeAdapter[MetricParams] = TypeAdapter(MetricParams)


def parse_metric(metric_type: MetricType | str, params: dict[str, Any] | None) -> MetricParams:
    """Build the metric variant for ``metric_type`` from its stored parameters.

    Agent output sometimes carries extra hint keys (for example ``window``);
    only keys the variant declares are kept, everything else is dropped.
    Missing or mistyped required keys raise ``pydantic.ValidationError``.
    """
    tag = MetricType(metric_type)
    payload = dict(params or {})
    payload.pop("type", None)
    allowed = _VARIANTS[tag].model_fields.keys()
    cleaned = {key: value for key, value in payload.items() if key in allowed}
    cleaned["type"] = tag.value
    return _METRIC_ADAPTER.validate_python(cleaned)


_VARIANTS: dict[MetricType, type[_MetricBase]] = {
    MetricType.CATEGORY_SPEND_CAP: CategorySpendCap,
    MetricType.MERCHANT_SPEND_CAP: MerchantSpendCap,
    MetricType.NO_MERCHANT_CHARGE: NoMerchantCharge,
    MetricType.TRANSFER_AMOUNT: TransferAmount,
}
