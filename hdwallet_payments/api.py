"""
JSON envelope functions for an HTTP layer.

Every function returns ``{"success": True, ...}`` or ``{"success": False, "error": str}``.
Gateway errors become error envelopes; anything else propagates to the caller.
"""

import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

from .core import PaymentGateway
from .exceptions import HDWalletPaymentsError, ValidationError
from .models import BackupReason

logger = logging.getLogger(__name__)


def envelope(func: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    @wraps(func)
    def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            result = func(*args, **kwargs)
        except HDWalletPaymentsError as e:
            logger.warning("%s failed: %s", func.__name__, e.message)
            response = {"success": False, "error": e.message}
            if e.error_code:
                response["errorCode"] = e.error_code
            return response
        result.setdefault("success", True)
        return result

    return wrapper


@envelope
def allocate_address(
    gateway: PaymentGateway,
    expected_amount: Any,
    crypto_type: str = "ETH",
    order_id: Optional[str] = None,
    fiat_amount: Optional[Any] = None,
    fiat_currency: Optional[str] = None,
) -> Dict[str, Any]:
    payment_address = gateway.allocate_address(
        expected_amount,
        crypto_type=crypto_type,
        order_id=order_id,
        fiat_amount=fiat_amount,
        fiat_currency=fiat_currency,
    )
    return {
        **payment_address.to_dict(),
        "networkId": gateway.settings.chain_id,
        "networkType": gateway.settings.network,
    }


@envelope
def record_payment(
    gateway: PaymentGateway, address: str, amount: Any, crypto_type: str = "ETH", tx_hash: Optional[str] = None
) -> Dict[str, Any]:
    return gateway.record_payment(address, amount, crypto_type=crypto_type, tx_hash=tx_hash)


@envelope
def release_funds(
    gateway: PaymentGateway, address: Optional[str] = None, amount: Optional[Any] = None, wait: bool = True
) -> Dict[str, Any]:
    return gateway.release_funds(address=address, amount=amount, wait=wait)


@envelope
def get_database_status(gateway: PaymentGateway, force: bool = False) -> Dict[str, Any]:
    return {"status": gateway.get_database_status(force=force).to_dict()}


@envelope
def create_backup(gateway: PaymentGateway, reason: str = BackupReason.MANUAL.value) -> Dict[str, Any]:
    try:
        backup_reason = BackupReason(reason)
    except ValueError as e:
        raise ValidationError(f"Unknown backup reason: {reason}", field="reason", value=reason) from e
    records = gateway.create_backup(backup_reason)
    return {
        "message": f"Created {len(records)} backup(s)",
        "backups": [record.to_dict() for record in records],
    }


@envelope
def restore_backup(
    gateway: PaymentGateway, backup_file: str, force: bool = False, snapshot_current: bool = True
) -> Dict[str, Any]:
    return gateway.restore_backup(backup_file, force=force, snapshot_current=snapshot_current).to_dict()


@envelope
def auto_recover(gateway: PaymentGateway) -> Dict[str, Any]:
    return gateway.auto_recover()


@envelope
def list_backups(gateway: PaymentGateway, source_file: Optional[str] = None) -> Dict[str, Any]:
    records = gateway.list_backups(source_file)
    return {"count": len(records), "backups": [record.to_dict() for record in records]}
