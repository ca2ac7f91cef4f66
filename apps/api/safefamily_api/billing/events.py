"""Billing events parsed from Stripe webhook payloads."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def classify(cls, raw_type: str) -> "BillingEventType":
        try:
            member = cls(raw_type)
        except ValueError:
            return cls.UNKNOWN
        return member


class MalformedEventError(ValueError):
    """Event body is valid JSON but lacks the fields every Stripe event carries."""


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _metadata(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


@dataclass(frozen=True)
class BillingEvent:
    """Immutable view of one Stripe event.

    ``previous_metadata`` is ``None`` unless the provider reported the old
    metadata in ``data.previous_attributes`` (subscription updates).
    """

    event_id: str
    event_type: BillingEventType
    raw_type: str
    object_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    previous_metadata: Optional[dict[str, str]] = None
    status: Optional[str] = None
    amount: int = 0
    created: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "BillingEvent":
        """Build from a decoded Stripe event.

        Raises:
            MalformedEventError: If ``id``, ``type`` or ``data.object`` is missing.
        """
        if not isinstance(payload, Mapping):
            raise MalformedEventError("Event body must be a JSON object")

        event_id = _str_or_none(payload.get("id"))
        raw_type = _str_or_none(payload.get("type"))
        data = payload.get("data")
        obj = data.get("object") if isinstance(data, Mapping) else None
        if not event_id or not raw_type or not isinstance(obj, Mapping):
            raise MalformedEventError("Missing required fields: id, type, data.object")

        customer_details = obj.get("customer_details")
        if not isinstance(customer_details, Mapping):
            customer_details = {}

        email = _str_or_none(obj.get("customer_email")) or _str_or_none(customer_details.get("email"))

        customer = obj.get("customer")
        if isinstance(customer, Mapping):
            customer_id = _str_or_none(customer.get("id"))
        else:
            customer_id = _str_or_none(customer)

        metadata = _metadata(obj.get("metadata"))

        # Stripe reports only the changed metadata keys, with null for keys
        # that did not exist before; overlay them on the current metadata.
        previous_metadata: Optional[dict[str, str]] = None
        previous_attributes = data.get("previous_attributes")
        if isinstance(previous_attributes, Mapping) and isinstance(
            previous_attributes.get("metadata"), Mapping
        ):
            previous_metadata = dict(metadata)
            for key, value in previous_attributes["metadata"].items():
                if value is None:
                    previous_metadata.pop(str(key), None)
                else:
                    previous_metadata[str(key)] = str(value)

        amount = obj.get("amount_total")
        if amount is None:
            amount = obj.get("amount_due")
        created = payload.get("created")

        return cls(
            event_id=event_id,
            event_type=BillingEventType.classify(raw_type),
            raw_type=raw_type,
            object_id=_str_or_none(obj.get("id")),
            customer_email=email,
            customer_id=customer_id,
            customer_name=_str_or_none(customer_details.get("name")),
            metadata=metadata,
            previous_metadata=previous_metadata,
            status=_str_or_none(obj.get("status")),
            amount=amount if isinstance(amount, int) else 0,
            created=created if isinstance(created, int) else None,
        )
