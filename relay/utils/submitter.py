"""
Transaction Submitter

Submits a dual-signed bundle to the ledger and waits for finality.

- Submission happens ONCE. The relay never resubmits on its own.
- If the submit call times out, the outcome is unknown: the relay polls
  sui_getTransactionBlock by the locally computed digest (read-only, so
  retried with tenacity) until finality or the bound elapses.
- A caller that resubmits the same bundle gets the same digest; the ledger
  deduplicates by digest, so effects are never applied twice.

Errors:
- SubmissionRejected: ledger validation failure or failed execution (verbatim)
- NetworkError:       ledger unreachable before submission
- Timeout:            finality not observed within the bound
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_exponential

from relay.config import FINALITY_TIMEOUT_SECONDS
from relay.utils import metrics
from relay.utils.coordinator import SignatureBundle
from relay.utils.errors import NetworkError, RelayError, SubmissionRejected, Timeout
from relay.utils.ledger import LedgerRpcError, SuiLedgerClient

logger = logging.getLogger(__name__)


class _NotFinal(Exception):
    pass


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal ledger output for one transaction."""

    digest: str
    effects: Dict[str, Any] = field(default_factory=dict)
    events: List[Any] = field(default_factory=list)
    object_changes: List[Any] = field(default_factory=list)
    checkpoint: Optional[str] = None

    @classmethod
    def from_rpc(cls, result: Dict[str, Any]) -> "ExecutionResult":
        return cls(
            digest=result["digest"],
            effects=result.get("effects") or {},
            events=result.get("events") or [],
            object_changes=result.get("objectChanges") or [],
            checkpoint=result.get("checkpoint"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": self.digest,
            "effects": self.effects,
            "events": self.events,
            "objectChanges": self.object_changes,
            "checkpoint": self.checkpoint,
        }


class TxSubmitter:
    """Single-shot submission plus bounded finality wait."""

    def __init__(
        self,
        ledger: SuiLedgerClient,
        finality_timeout: float = FINALITY_TIMEOUT_SECONDS,
        poll_min_wait: float = 0.25,
        poll_max_wait: float = 2.0,
    ):
        self.ledger = ledger
        self.finality_timeout = finality_timeout
        self.poll_min_wait = poll_min_wait
        self.poll_max_wait = poll_max_wait

    async def submit(self, bundle: SignatureBundle) -> ExecutionResult:
        started = time.perf_counter()
        try:
            result = await self._submit(bundle)
        except RelayError as e:
            metrics.submissions.labels(outcome=e.code).inc()
            logger.warning(f"❌ Submission of {bundle.digest} failed ({e.code}): {e.detail}")
            raise

        metrics.submissions.labels(outcome="executed").inc()
        metrics.finality_duration.observe(time.perf_counter() - started)
        logger.info(f"✅ {bundle.digest} final ({result.effects.get('status', {}).get('status')})")
        return result

    async def _submit(self, bundle: SignatureBundle) -> ExecutionResult:
        try:
            response = await self.ledger.execute_transaction_block(bundle.tx_bytes_b64, bundle.signatures)
        except LedgerRpcError as e:
            raise SubmissionRejected(e.message, extra={"digest": bundle.digest, "ledger_code": e.code})
        except Timeout:
            # Outcome unknown: the node may still execute it
            logger.warning(f"⏱️  Submit of {bundle.digest} timed out; waiting for finality by digest")
            response = None

        if response is not None:
            returned = response.get("digest")
            if returned and returned != bundle.digest:
                raise SubmissionRejected(
                    f"Ledger reported digest {returned} for bytes with digest {bundle.digest}",
                    extra={"digest": bundle.digest},
                )
            if response.get("effects") and response.get("confirmedLocalExecution", True):
                return self._check_status(ExecutionResult.from_rpc({"digest": bundle.digest, **response}))

        final = await self.wait_for_finality(bundle.digest)
        return self._check_status(final)

    async def wait_for_finality(self, digest: str) -> ExecutionResult:
        """
        Poll the ledger for ``digest`` until it is final.

        Raises:
            Timeout: not observed within finality_timeout
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.finality_timeout),
                wait=wait_exponential(multiplier=self.poll_min_wait, min=self.poll_min_wait, max=self.poll_max_wait),
                retry=retry_if_exception_type((_NotFinal, NetworkError, Timeout)),
            ):
                with attempt:
                    found = await self.ledger.get_transaction_block(digest)
                    if not found or not found.get("effects"):
                        raise _NotFinal(digest)
                    return ExecutionResult.from_rpc({"digest": digest, **found})
        except RetryError:
            raise Timeout(
                f"Finality for {digest} not observed within {self.finality_timeout}s; "
                f"resubmitting the same bundle is safe",
                extra={"digest": digest},
            )
        except LedgerRpcError as e:
            raise SubmissionRejected(e.message, extra={"digest": digest, "ledger_code": e.code})

    @staticmethod
    def _check_status(result: ExecutionResult) -> ExecutionResult:
        status = result.effects.get("status") or {}
        if status.get("status") == "failure":
            raise SubmissionRejected(
                status.get("error", "Transaction execution failed"),
                extra={"digest": result.digest, "execution": result.to_dict()},
            )
        return result
