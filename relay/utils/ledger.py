"""
Sui Ledger JSON-RPC Client

Thin async client for the fullnode JSON-RPC API, used for:
- executing dual-signed transactions (sui_executeTransactionBlock)
- finality lookups by digest (sui_getTransactionBlock)
- resolving object references (sui_getObject / sui_multiGetObjects)
- reading the on-chain EnclaveConfig (attestation record)
- reading vault account balances (Ledger accounts table, dynamic fields)

Errors:
- LedgerRpcError: the node answered with a JSON-RPC error (verbatim message)
- NetworkError:   the node could not be reached
- Timeout:        the request timed out (outcome unknown for writes)
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from relay_canonical.bcs import normalize_address
from relay_canonical.transactions import ObjectRef
from relay.config import LEDGER_TIMEOUT_SECONDS, SUI_RPC_URL
from relay.utils.errors import NetworkError, ParameterMismatch, Timeout

logger = logging.getLogger(__name__)

EXECUTE_OPTIONS = {
    "showEffects": True,
    "showEvents": True,
    "showObjectChanges": True,
}


class LedgerRpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, method: str, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.code = code
        self.message = message
        self.data = data


class SuiLedgerClient:
    """Async Sui fullnode client (one pooled httpx client per process)."""

    def __init__(
        self,
        url: str = SUI_RPC_URL,
        timeout: float = LEDGER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._request_id = 0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise Timeout(f"Ledger {method} timed out: {e!r}")
        except httpx.TransportError as e:
            raise NetworkError(f"Ledger unreachable for {method}: {e!r}")

        if response.status_code >= 500 or response.status_code == 429:
            raise NetworkError(f"Ledger {method} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise NetworkError(f"Ledger {method} returned non-JSON body (HTTP {response.status_code})")

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            raise LedgerRpcError(method, error.get("code"), error.get("message", str(error)), error.get("data"))
        if not response.is_success:
            raise NetworkError(f"Ledger {method} returned HTTP {response.status_code}")

        return data.get("result")

    # ============================================================
    # Transactions
    # ============================================================

    async def execute_transaction_block(self, tx_bytes_b64: str, signatures: Sequence[str]) -> Dict[str, Any]:
        """Submit a signed transaction. Signatures are passed in bundle order."""
        return await self._rpc(
            "sui_executeTransactionBlock",
            [tx_bytes_b64, list(signatures), EXECUTE_OPTIONS, "WaitForLocalExecution"],
        )

    async def get_transaction_block(self, digest: str) -> Optional[Dict[str, Any]]:
        """Return the executed transaction, or None if the node has not seen it yet."""
        try:
            return await self._rpc("sui_getTransactionBlock", [digest, EXECUTE_OPTIONS])
        except LedgerRpcError as e:
            if "could not find" in e.message.lower() or "not found" in e.message.lower():
                return None
            raise

    # ============================================================
    # Objects
    # ============================================================

    async def get_object(self, object_id: str, show_content: bool = False, show_owner: bool = False) -> Dict[str, Any]:
        result = await self._rpc(
            "sui_getObject",
            [object_id, {"showContent": show_content, "showOwner": show_owner}],
        )
        return _object_data(object_id, result)

    async def multi_get_objects(self, object_ids: Sequence[str], show_content: bool = False) -> List[Dict[str, Any]]:
        result = await self._rpc(
            "sui_multiGetObjects",
            [list(object_ids), {"showContent": show_content, "showOwner": True}],
        )
        return [_object_data(oid, item) for oid, item in zip(object_ids, result or [])]

    async def get_object_ref(self, object_id: str) -> ObjectRef:
        data = await self.get_object(object_id)
        return _object_ref(data)

    async def get_owned_refs(self, object_ids: Sequence[str], owner: str) -> List[Dict[str, Any]]:
        """
        Resolve owned objects (e.g. coins) to references plus their Move fields.

        Raises:
            ParameterMismatch: An object is missing or not owned by ``owner``
        """
        owner = normalize_address(owner)
        items = await self.multi_get_objects(object_ids, show_content=True)
        resolved = []
        for data in items:
            holder = (data.get("owner") or {}).get("AddressOwner")
            if holder is None or normalize_address(holder) != owner:
                raise ParameterMismatch(f"Object {data['objectId']} is not owned by {owner}")
            fields = ((data.get("content") or {}).get("fields")) or {}
            resolved.append({"ref": _object_ref(data), "type": data.get("type"), "fields": fields})
        return resolved

    async def get_initial_shared_version(self, object_id: str) -> int:
        data = await self.get_object(object_id, show_owner=True)
        shared = (data.get("owner") or {}).get("Shared")
        if not shared:
            raise ParameterMismatch(f"Object {object_id} is not a shared object")
        return int(shared["initial_shared_version"])

    async def get_move_fields(self, object_id: str) -> Dict[str, Any]:
        data = await self.get_object(object_id, show_content=True)
        content = data.get("content") or {}
        if content.get("dataType") != "moveObject":
            raise ParameterMismatch(f"Object {object_id} is not a Move object")
        return content.get("fields") or {}

    # ============================================================
    # Vault accounts
    # ============================================================

    async def get_accounts_table_id(self, ledger_id: str) -> str:
        """Object id of the Ledger's `accounts` Table (parent of the per-user dynamic fields)."""
        fields = await self.get_move_fields(ledger_id)
        try:
            return fields["accounts"]["fields"]["id"]["id"]
        except (KeyError, TypeError):
            raise ParameterMismatch(f"Ledger {ledger_id} has no accounts table")

    async def get_withdrawable_balance(self, accounts_table_id: str, address: str) -> int:
        """
        Current `withdrawable_amount` of an account in the vault Ledger.

        An address with no account row has a balance of 0.
        """
        result = await self._rpc(
            "suix_getDynamicFieldObject",
            [accounts_table_id, {"type": "address", "value": normalize_address(address)}],
        )
        error = (result or {}).get("error")
        if error:
            if error.get("code") == "dynamicFieldNotFound":
                return 0
            raise ParameterMismatch(f"Cannot read vault account {address}: {error}")
        if not result or not result.get("data"):
            return 0

        content = result["data"].get("content") or {}
        account = ((content.get("fields") or {}).get("value") or {}).get("fields") or {}
        return int(account.get("withdrawable_amount", 0))


def _object_data(object_id: str, result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not result or result.get("error") or not result.get("data"):
        error = (result or {}).get("error")
        raise ParameterMismatch(f"Object {object_id} not found on ledger: {error}")
    return result["data"]


def _object_ref(data: Dict[str, Any]) -> ObjectRef:
    return ObjectRef(
        object_id=normalize_address(data["objectId"]),
        version=int(data["version"]),
        digest=data["digest"],
    )
