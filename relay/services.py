"""
Relay Service Wiring
====================

Builds the component graph once per process and exposes the multi-step
flows the API routes call:

    build_sponsored()    quote → ledger balances (bets) → verify → build → sponsor
    execute_sponsored()  merge → submit → finality (→ confirm a staged rotation)
    rotate_attestation() authorize → build update_pcrs → sponsor → stage

Tests construct RelayServices directly with fake transports and sponsors.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import List, Optional

from relay import config
from relay.config import ChainObjects
from relay_canonical.quotes import Quote, QuoteFormatError
from relay.utils.attestation_registry import AttestationRecord, AttestationRegistry, record_from_enclave_config
from relay.utils.coordinator import DualSignatureCoordinator
from relay.utils.errors import BadSignature, ParameterMismatch, SignatureMismatch, Unauthorized, UntrustedEnclave
from relay.utils.ledger import SuiLedgerClient
from relay.utils.quote_verifier import QuoteVerifier
from relay.utils.rate_limiter import RateLimiter
from relay.utils.replay_window import ReplayWindow
from relay.utils.sponsor import ShinamiGasStation, SponsoredTransaction, SponsorSigner
from relay.utils.submitter import ExecutionResult, TxSubmitter
from relay.utils.tee_proxy import TeeOracleProxy
from relay.utils.tx_builder import (
    ACTION_PLACE_BET,
    ActionParams,
    BetParams,
    DepositParams,
    FundingCoin,
    PayloadSealer,
    SponsoredTxBuilder,
    TransactionPayload,
    WithdrawParams,
)

logger = logging.getLogger(__name__)


@dataclass
class BuildOutcome:
    payload: TransactionPayload
    sponsored: SponsoredTransaction


class RelayServices:
    """All relay components plus the enclave key binding state."""

    def __init__(
        self,
        chain: ChainObjects,
        proxy: TeeOracleProxy,
        registry: AttestationRegistry,
        verifier: QuoteVerifier,
        builder: SponsoredTxBuilder,
        sponsor_signer: SponsorSigner,
        coordinator: DualSignatureCoordinator,
        submitter: TxSubmitter,
        ledger: SuiLedgerClient,
        debug_mode: bool = False,
        debug_public_key: str = "",
    ):
        self.chain = chain
        self.proxy = proxy
        self.registry = registry
        self.verifier = verifier
        self.builder = builder
        self.sponsor_signer = sponsor_signer
        self.coordinator = coordinator
        self.submitter = submitter
        self.ledger = ledger
        self.debug_mode = debug_mode
        self.debug_public_key = debug_public_key
        self._bind_lock = asyncio.Lock()
        self._accounts_table_id: Optional[str] = None

    async def aclose(self) -> None:
        await self.ledger.aclose()

    # ============================================================
    # Enclave key binding
    # ============================================================

    async def enclave_key(self, refresh: bool = False) -> str:
        """
        Return the enclave signing key trusted under the current record,
        binding it first if needed.

        Raises:
            UpstreamUnavailable / UpstreamError: enclave unreachable
            UntrustedEnclave: attestation does not match the current record
        """
        if not refresh:
            trusted = self.registry.trusted_keys()
            if trusted:
                return max(trusted, key=lambda b: b.bound_at).public_key

        async with self._bind_lock:
            if not refresh:
                trusted = self.registry.trusted_keys()
                if trusted:
                    return max(trusted, key=lambda b: b.bound_at).public_key

            if self.debug_mode and self.debug_public_key:
                return self.registry.bind_debug_key(self.debug_public_key).public_key

            health = await self.proxy.health_check()
            claimed = health.get("pk") or health.get("public_key")
            if not claimed:
                raise UntrustedEnclave("Enclave health_check did not report a public key")

            if self.debug_mode:
                return self.registry.bind_debug_key(claimed).public_key

            attestation = await self.proxy.get_attestation()
            document = attestation.get("attestation")
            if not document:
                raise UntrustedEnclave("Enclave returned no attestation document")
            return self.registry.bind_enclave_key(document, claimed).public_key

    async def load_attestation_from_chain(self) -> AttestationRecord:
        """Replace the registry's record with the on-chain EnclaveConfig."""
        fields = await self.ledger.get_move_fields(self.chain.enclave_config_id)
        record = record_from_enclave_config(fields)
        self.registry.load_record(record)
        return record

    async def resolve_shared_versions(self) -> None:
        """Fill in any initial_shared_version left at 0 in configuration."""
        objects = {
            "enclave_config": self.chain.enclave_config_id,
            "enclave_object": self.chain.enclave_object_id,
            "vault": self.chain.vault_id,
            "ledger": self.chain.ledger_id,
            "world": self.chain.world_id,
        }
        for key, object_id in objects.items():
            if object_id and not self.chain.initial_versions.get(key):
                version = await self.ledger.get_initial_shared_version(object_id)
                self.chain.initial_versions[key] = version
                logger.info(f"📌 {key} initial shared version: {version}")

    # ============================================================
    # Flows
    # ============================================================

    async def build_sponsored(self, action: str, params: ActionParams, tee_response: dict,
                              tee_signature: Optional[str] = None) -> BuildOutcome:
        """
        Quote → verify → build → sponsor.

        Parameters are checked against the quote, and bet prior balances
        against the vault Ledger, BEFORE verification, so a mismatched
        request does not spend the quote.
        """
        try:
            quote = Quote.from_enclave_response(tee_response, tee_signature)
        except QuoteFormatError as e:
            raise BadSignature(f"Enclave response is not a valid signed quote: {e}")

        self.builder.check_parameters(quote, action, params)
        if action == ACTION_PLACE_BET:
            await self.check_bet_balances(params)

        enclave_key = await self.enclave_key()
        try:
            verified = self.verifier.verify(quote, enclave_key)
        except BadSignature:
            # The enclave may have restarted with a fresh key
            fresh_key = await self.enclave_key(refresh=True)
            if fresh_key == enclave_key:
                raise
            verified = self.verifier.verify(quote, fresh_key)

        payload = self.builder.build(verified, action, params)
        sponsored = await self.sponsor_signer.sign(payload)
        return BuildOutcome(payload=payload, sponsored=sponsored)

    async def check_bet_balances(self, params: BetParams) -> None:
        """
        The prior balances a bet writes from must be the vault Ledger's
        current withdrawable amounts.

        Raises:
            ParameterMismatch: either prior balance differs from the ledger
        """
        if self._accounts_table_id is None:
            self._accounts_table_id = await self.ledger.get_accounts_table_id(self.chain.ledger_id)

        user_balance, maker_balance = await asyncio.gather(
            self.ledger.get_withdrawable_balance(self._accounts_table_id, params.sender),
            self.ledger.get_withdrawable_balance(self._accounts_table_id, params.maker),
        )

        mismatches = []
        if params.user_prior_balance != user_balance:
            mismatches.append(
                f"user_prior_balance {params.user_prior_balance} != ledger balance {user_balance}"
            )
        if params.maker_prior_balance != maker_balance:
            mismatches.append(
                f"maker_prior_balance {params.maker_prior_balance} != ledger balance {maker_balance}"
            )
        if mismatches:
            raise ParameterMismatch("; ".join(mismatches), extra={"mismatches": mismatches})

    async def resolve_funding(self, sender: str, coin_ids: List[str]) -> List[FundingCoin]:
        """Turn deposit coin ids into object references with balances."""
        resolved = await self.ledger.get_owned_refs(coin_ids, sender)
        funding = []
        for item in resolved:
            balance = item["fields"].get("balance")
            if balance is None:
                raise ParameterMismatch(f"Object {item['ref'].object_id} is not a coin")
            funding.append(FundingCoin(ref=item["ref"], balance=int(balance)))
        return funding

    async def execute_sponsored(self, tx_bytes_b64: str, sponsor_signature: str,
                                sender_signature: str) -> ExecutionResult:
        try:
            tx_bytes = base64.b64decode(tx_bytes_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SignatureMismatch(f"tx_bytes is not valid base64: {e}")

        bundle = self.coordinator.merge(tx_bytes, sponsor_signature, sender_signature)
        result = await self.submitter.submit(bundle)

        if result.digest in self.registry.pending_rotations():
            await self._confirm_rotation(result.digest)
        return result

    async def _confirm_rotation(self, digest: str) -> None:
        """update_pcrs is final on-chain: install the staged record."""
        try:
            installed = self.registry.confirm_rotation(digest)
        except Unauthorized as e:
            # The ledger accepted it, so the ledger's record wins
            logger.warning(f"⚠️  Staged rotation {digest} no longer applies ({e.detail}); reloading from ledger")
            await self.load_attestation_from_chain()
            return
        if installed is not None:
            logger.info(f"✅ update_pcrs {digest} final: attestation v{installed.version} installed")

    async def rotate_attestation(self, record: AttestationRecord, authorization: str):
        """
        Authorize, build + sponsor enclave::update_pcrs for the authority,
        then stage the record under that transaction's digest.

        The record is installed only when the authority executes the
        returned transaction through execute_sponsored() and it is final.
        Nothing is staged if authorization, cap resolution or sponsorship fails.
        """
        authority = self.registry.authorize_rotation(record, authorization)

        cap_ref = await self.ledger.get_object_ref(self.chain.pcr_update_cap_id)
        payload = self.builder.build_update_pcrs(record, authority, cap_ref)
        sponsored = await self.sponsor_signer.sign(payload)

        staged = self.registry.stage_rotation(record, authorization, sponsored.digest)
        return staged, BuildOutcome(payload=payload, sponsored=sponsored)


def params_from_request(request) -> ActionParams:
    """Map a validated build request onto builder parameters (deposit excluded)."""
    if request.action == ACTION_PLACE_BET:
        return BetParams(
            sender=request.sender,
            pool_id=request.pool_id,
            outcome=request.outcome,
            amount=request.amount,
            current_probs=tuple(request.current_probs),
            maker=request.maker,
            user_prior_balance=request.user_prior_balance,
            user_new_balance=request.user_new_balance,
            maker_prior_balance=request.maker_prior_balance,
            maker_new_balance=request.maker_new_balance,
        )
    return WithdrawParams(sender=request.sender, amount=request.amount)


def deposit_params(request, funding: List[FundingCoin]) -> DepositParams:
    return DepositParams(sender=request.sender, amount=request.amount, funding=tuple(funding))


def create_services() -> RelayServices:
    """Build the production component graph from relay.config."""
    chain = ChainObjects()
    sealer = PayloadSealer()

    initial = AttestationRecord(
        version=0,
        pcr0=config.ATTESTATION_PCR0 or "00" * 48,
        pcr1=config.ATTESTATION_PCR1 or "00" * 48,
        pcr2=config.ATTESTATION_PCR2 or "00" * 48,
        authorized_by="config",
    )
    registry = AttestationRegistry(initial, chain.enclave_config_id, config.ATTESTATION_AUTHORITIES)
    ledger = SuiLedgerClient()

    return RelayServices(
        chain=chain,
        proxy=TeeOracleProxy(rate_limiter=RateLimiter()),
        registry=registry,
        verifier=QuoteVerifier(registry, ReplayWindow()),
        builder=SponsoredTxBuilder(chain, sealer),
        sponsor_signer=SponsorSigner(ShinamiGasStation(), sealer),
        coordinator=DualSignatureCoordinator(chain.allowed_packages()),
        submitter=TxSubmitter(ledger),
        ledger=ledger,
        debug_mode=config.ENCLAVE_DEBUG_MODE,
        debug_public_key=config.ENCLAVE_DEBUG_PUBLIC_KEY,
    )

