from app.upstream.client import (
    BillingApi,
    BillingClient,
    CrmApi,
    CrmClient,
    Ok,
    RemoteError,
    UpstreamConfig,
    any_of,
    equals_criterion,
    get_billing_client,
    get_crm_client,
)

__all__ = [
    "BillingApi",
    "BillingClient",
    "CrmApi",
    "CrmClient",
    "Ok",
    "RemoteError",
    "UpstreamConfig",
    "any_of",
    "equals_criterion",
    "get_billing_client",
    "get_crm_client",
]
