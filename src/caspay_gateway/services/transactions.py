"""On-chain verification of Casper native transfers."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Callable

import structlog

from caspay_gateway.core.exceptions import CasperRpcError
from caspay_gateway.domain.enums import Network
from caspay_gateway.domain.models import TransactionVerification
from caspay_gateway.repositories.payments import PaymentRepository
from caspay_gateway.services.casper_rpc import CasperRpcClient

logger = structlog.get_logger(__name__)

MOTES_PER_CSPR = Decimal(10) ** 9
ACCOUNT_HASH_PREFIX = "account-hash-"
MOCK_HASH_PATTERN = re.compile(r"^(demo_tx_|mock_tx_|test_tx_)", re.IGNORECASE)

_KEY_ALGORITHMS = {"01": b"ed25519", "02": b"secp256k1"}
_HEX = re.compile(r"^[0-9a-fA-F]+$")


def account_hash(public_key_hex: str) -> str:
    """``account-hash-<blake2b-256(algorithm || 0x00 || raw key)>`` for a tagged public key."""
    key = public_key_hex.strip().lower()
    algorithm = _KEY_ALGORITHMS.get(key[:2])
    if algorithm is None or not _HEX.match(key):
        raise ValueError(f"Not a Casper public key: {public_key_hex}")
    raw = bytes.fromhex(key[2:])
    digest = hashlib.blake2b(algorithm + b"\x00" + raw, digest_size=32).hexdigest()
    return f"{ACCOUNT_HASH_PREFIX}{digest}"


def normalize_account(value: Any) -> str | None:
    """Reduce the shapes a transfer target can take to an ``account-hash-`` string."""
    if isinstance(value, dict):
        for key in ("Account", "AccountHash", "account_hash"):
            if key in value:
                return normalize_account(value[key])
        return None
    if not isinstance(value, str) or not value:
        return None
    text = value.strip().lower()
    if text.startswith(ACCOUNT_HASH_PREFIX):
        return text
    if len(text) == 64 and _HEX.match(text):
        return f"{ACCOUNT_HASH_PREFIX}{text}"
    try:
        return account_hash(text)
    except ValueError:
        return None


def to_motes(amount_cspr: float | Decimal | str) -> int:
    return int((Decimal(str(amount_cspr)) * MOTES_PER_CSPR).to_integral_value(rounding=ROUND_FLOOR))


def is_mock_hash(deploy_hash: str) -> bool:
    return bool(MOCK_HASH_PATTERN.match(deploy_hash))


def _named_args(args: Any) -> dict[str, Any]:
    """Session args arrive as ``[[name, {"cl_type": ..., "parsed": ...}], ...]``."""
    named: dict[str, Any] = {}
    for item in args or []:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            name, value = item
            named[name] = value.get("parsed") if isinstance(value, dict) else value
    return named


def _execution_outcome(result: dict[str, Any]) -> tuple[bool, dict[str, Any]] | None:
    """(succeeded, success-body) from a 1.x ``execution_results`` or 2.x ``execution_info``."""
    results = result.get("execution_results")
    if results:
        body = results[0].get("result") or {}
        if "Success" in body:
            return True, body["Success"] or {}
        return False, {}
    info = result.get("execution_info") or {}
    execution = info.get("execution_result")
    if not execution:
        return None
    if "Version1" in execution:
        body = execution["Version1"]
        if "Success" in body:
            return True, body["Success"] or {}
        return False, {}
    body = execution.get("Version2") or {}
    return body.get("error_message") is None, body


def _find_transfer(deploy: dict[str, Any], success: dict[str, Any]) -> dict[str, Any] | None:
    session = deploy.get("session") or {}
    transfer = session.get("Transfer")
    if transfer is not None:
        args = _named_args(transfer.get("args"))
        if "amount" in args and "target" in args:
            return {"amount": args["amount"], "to": args["target"]}

    transforms = (success.get("effect") or {}).get("transforms") or []
    for entry in transforms:
        transform = entry.get("transform")
        if isinstance(transform, dict) and "WriteTransfer" in transform:
            write = transform["WriteTransfer"]
            return {"amount": write.get("amount"), "to": write.get("to")}

    for entry in success.get("transfers") or []:
        record = entry.get("Version2") or entry.get("Version1") or entry
        if isinstance(record, dict) and "amount" in record and "to" in record:
            return {"amount": record["amount"], "to": record["to"]}
    return None


def _failure(deploy_hash: str, error: str) -> TransactionVerification:
    return TransactionVerification(valid=False, deploy_hash=deploy_hash, error=error)


class TransactionVerifier:
    def __init__(
        self,
        payment_repository: PaymentRepository,
        rpc_factory: Callable[[Network], CasperRpcClient],
        *,
        mock_mode: bool = False,
    ):
        self._payments = payment_repository
        self._rpc_factory = rpc_factory
        self._mock_mode = mock_mode

    async def verify(
        self,
        deploy_hash: str,
        expected_recipient: str,
        expected_amount: float | Decimal,
        network: Network,
        *,
        sender_hint: str | None = None,
    ) -> TransactionVerification:
        if network is Network.TESTNET and (self._mock_mode or is_mock_hash(deploy_hash)):
            logger.info(
                "transaction verification bypassed",
                deploy_hash=deploy_hash,
                reason="mock_mode" if self._mock_mode else "mock_hash",
            )
            return TransactionVerification(
                valid=True,
                deploy_hash=deploy_hash,
                amount=to_motes(expected_amount),
                recipient=expected_recipient,
                sender=sender_hint or "",
                timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            )

        try:
            result = await self._rpc_factory(network).get_deploy(deploy_hash)
        except CasperRpcError as exc:
            logger.warning("deploy lookup failed", deploy_hash=deploy_hash, error=str(exc))
            return _failure(deploy_hash, str(exc) or "Transaction verification failed")
        return self.check_deploy(result, deploy_hash, expected_recipient, expected_amount)

    def check_deploy(
        self,
        result: dict[str, Any],
        deploy_hash: str,
        expected_recipient: str,
        expected_amount: float | Decimal,
    ) -> TransactionVerification:
        deploy = result.get("deploy")
        outcome = _execution_outcome(result)
        if not deploy or outcome is None:
            return _failure(deploy_hash, "Transaction not found or execution results missing")

        succeeded, success = outcome
        if not succeeded:
            return _failure(deploy_hash, "Transaction failed on blockchain")

        transfer = _find_transfer(deploy, success)
        if transfer is None:
            return _failure(deploy_hash, "No transfer found in transaction")

        expected_account = normalize_account(expected_recipient)
        actual_account = normalize_account(transfer["to"])
        if expected_account is None or expected_account != actual_account:
            return _failure(
                deploy_hash,
                f"Recipient mismatch. Expected: {expected_account or expected_recipient}, "
                f"Got: {actual_account or transfer['to']}",
            )

        try:
            actual_motes = int(str(transfer["amount"]))
        except (TypeError, ValueError):
            return _failure(deploy_hash, "Transfer amount is not readable")
        expected_motes = to_motes(expected_amount)
        if actual_motes < expected_motes:
            return _failure(
                deploy_hash,
                f"Amount mismatch. Expected: {expected_motes} motes, Got: {actual_motes} motes",
            )

        header = deploy.get("header") or {}
        return TransactionVerification(
            valid=True,
            deploy_hash=deploy_hash,
            amount=actual_motes,
            recipient=actual_account,
            sender=header.get("account"),
            timestamp=header.get("timestamp"),
        )

    async def is_already_processed(self, deploy_hash: str) -> bool:
        return await self._payments.is_processed(deploy_hash)
