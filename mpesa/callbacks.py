from dataclasses import dataclass, field

from utils.mpesa import MalformedCallback


@dataclass
class StkCallback:
    merchant_request_id: str
    checkout_request_id: str
    result_code: str
    result_desc: str
    metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == "0"

    @property
    def receipt_number(self) -> str:
        return str(self.metadata.get("MpesaReceiptNumber") or "")

    @property
    def transaction_date(self) -> str:
        return str(self.metadata.get("TransactionDate") or "")

    @property
    def phone_number(self) -> str:
        return str(self.metadata.get("PhoneNumber") or "")

    @property
    def amount(self):
        return self.metadata.get("Amount") or 0


def parse_metadata(callback_metadata) -> dict:
    """CallbackMetadata.Item is a list of {Name, Value} pairs; Value may be missing."""
    items = (callback_metadata or {}).get("Item") or []
    metadata = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            metadata[item["Name"]] = item.get("Value")
    return metadata


def parse_stk_callback(payload) -> StkCallback:
    if not isinstance(payload, dict):
        raise MalformedCallback("Callback body is not a JSON object")

    stk = (payload.get("Body") or {}).get("stkCallback")
    if not isinstance(stk, dict):
        raise MalformedCallback("Invalid callback structure - no stkCallback")

    checkout_request_id = stk.get("CheckoutRequestID")
    result_code = stk.get("ResultCode")
    if not checkout_request_id or result_code is None:
        raise MalformedCallback("stkCallback is missing CheckoutRequestID or ResultCode")

    return StkCallback(
        merchant_request_id=stk.get("MerchantRequestID") or "",
        checkout_request_id=checkout_request_id,
        result_code=str(result_code),
        result_desc=stk.get("ResultDesc") or "",
        metadata=parse_metadata(stk.get("CallbackMetadata")),
    )
