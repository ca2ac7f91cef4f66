"""Request context management for observability.

Context variables for request tracking across async boundaries. The webhook
path also binds the billing event id so every provisioning log line can be
traced back to the Stripe delivery that caused it.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Billing event currently being processed (Stripe evt_...)
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Short hash of the customer email being provisioned (never the raw address)
customer_hash_var: ContextVar[str] = ContextVar("customer_hash", default="")
