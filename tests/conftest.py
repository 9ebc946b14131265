"""
Shared fixtures: keys, a trusted registry, verifier/builder, and a fully
wired RelayServices with fake enclave, sponsor and ledger.
"""

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from relay.services import RelayServices
from relay.utils.attestation_registry import AttestationRecord, AttestationRegistry
from relay.utils.coordinator import DualSignatureCoordinator
from relay.utils.ledger import SuiLedgerClient
from relay.utils.quote_verifier import QuoteVerifier
from relay.utils.replay_window import ReplayWindow
from relay.utils.sponsor import SponsorSigner
from relay.utils.submitter import TxSubmitter
from relay.utils.tee_proxy import TeeOracleProxy
from relay.utils.tx_builder import PayloadSealer, SponsoredTxBuilder
from tests.fakes import (
    ACCOUNTS_TABLE_ID,
    FakeEnclave,
    FakeLedgerNode,
    FakeSponsor,
    MutableClock,
    QuoteFactory,
    SuiKeypair,
    enclave_public_key_hex,
    make_chain,
)

PCR0 = "a0" * 48
PCR1 = "a1" * 48
PCR2 = "a2" * 48


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def chain():
    return make_chain()


@pytest.fixture
def enclave_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def enclave_pk(enclave_key):
    return enclave_public_key_hex(enclave_key)


@pytest.fixture
def user():
    return SuiKeypair()


@pytest.fixture
def maker():
    return SuiKeypair()


@pytest.fixture
def sponsor_account():
    return SuiKeypair()


@pytest.fixture
def authority():
    return SuiKeypair()


@pytest.fixture
def quotes(enclave_key, clock):
    return QuoteFactory(enclave_key, clock)


@pytest.fixture
def initial_record():
    return AttestationRecord(version=1, pcr0=PCR0, pcr1=PCR1, pcr2=PCR2, authorized_by="test")


@pytest.fixture
def registry(initial_record, chain, authority, enclave_pk):
    """Registry with the test enclave key pinned under record v1."""
    registry = AttestationRegistry(initial_record, chain.enclave_config_id, [authority.address])
    registry.bind_debug_key(enclave_pk)
    return registry


@pytest.fixture
def replay_window(clock):
    return ReplayWindow(validity_ms=60_000, future_skew_ms=5_000, capacity=1_000, clock_ms=clock)


@pytest.fixture
def verifier(registry, replay_window):
    return QuoteVerifier(registry, replay_window)


@pytest.fixture
def sealer():
    return PayloadSealer(b"relay-test-seal-secret")


@pytest.fixture
def builder(chain, sealer):
    return SponsoredTxBuilder(chain, sealer)


@pytest.fixture
def fake_sponsor(sponsor_account):
    return FakeSponsor(sponsor_account)


@pytest.fixture
def sponsor_signer(fake_sponsor, sealer, sponsor_account):
    return SponsorSigner(fake_sponsor, sealer, sponsor_address=sponsor_account.address)


@pytest.fixture
def coordinator(chain, sponsor_account):
    return DualSignatureCoordinator(chain.allowed_packages(), sponsor_address=sponsor_account.address)


@pytest.fixture
def ledger_node(chain, user, maker):
    """Fullnode whose vault Ledger holds user 1000 and maker 5000 withdrawable."""
    node = FakeLedgerNode()
    node.add_ledger(chain.ledger_id, ACCOUNTS_TABLE_ID, {user.address: 1_000, maker.address: 5_000})
    return node


@pytest.fixture
def ledger(ledger_node):
    return SuiLedgerClient(url="http://ledger.test", timeout=5, transport=ledger_node.transport)


@pytest.fixture
def submitter(ledger):
    return TxSubmitter(ledger, finality_timeout=1.0, poll_min_wait=0.01, poll_max_wait=0.05)


@pytest.fixture
def enclave(enclave_pk):
    return FakeEnclave(enclave_pk)


@pytest.fixture
def proxy(enclave):
    return TeeOracleProxy(base_url="http://enclave.test", timeout=2, transport=enclave.transport)


@pytest.fixture
def services(chain, proxy, registry, verifier, builder, sponsor_signer, coordinator, submitter, ledger, enclave_pk):
    return RelayServices(
        chain=chain,
        proxy=proxy,
        registry=registry,
        verifier=verifier,
        builder=builder,
        sponsor_signer=sponsor_signer,
        coordinator=coordinator,
        submitter=submitter,
        ledger=ledger,
        debug_mode=True,
        debug_public_key=enclave_pk,
    )
