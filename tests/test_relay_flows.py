"""
End-to-end relay flows through RelayServices (scenarios A, B, C), with a
fake enclave, sponsor and ledger.
"""

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from relay.utils.attestation_registry import AttestationRecord
from relay.utils.errors import (
    BadSignature,
    ParameterMismatch,
    ReplayedQuote,
    SignatureMismatch,
    SubmissionRejected,
    Unauthorized,
    UpstreamUnavailable,
)
from relay.utils.tx_builder import ACTION_DEPOSIT, ACTION_PLACE_BET, ACTION_UPDATE_PCRS, DepositParams
from relay_canonical.constants import IntentScope
from tests.fakes import ACCOUNTS_TABLE_ID, QuoteFactory, SuiKeypair, bet_params, enclave_public_key_hex, object_id


async def test_scenario_a_mismatch_does_not_spend_quote(services, quotes, user, maker, fake_sponsor):
    """Amount 51 against a quote for 50 fails; the same quote then builds with 50."""
    quote_json = quotes.as_json(quotes.bet(user.address, maker.address))

    with pytest.raises(ParameterMismatch):
        await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker, amount=51), quote_json)
    assert fake_sponsor.calls == []

    outcome = await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)
    assert outcome.payload.action == ACTION_PLACE_BET
    assert outcome.sponsored.digest

    with pytest.raises(ReplayedQuote):
        await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)


async def test_inflated_prior_balance_is_refused(services, quotes, user, maker, fake_sponsor, replay_window):
    """Prior balances are read from the vault Ledger, not taken from the caller."""
    quote_json = quotes.as_json(quotes.bet(user.address, maker.address))
    inflated = bet_params(
        user, maker,
        user_prior_balance=10**15, user_new_balance=10**15 - 50,
        maker_prior_balance=0, maker_new_balance=50,
    )

    with pytest.raises(ParameterMismatch) as exc:
        await services.build_sponsored(ACTION_PLACE_BET, inflated, quote_json)

    mismatches = exc.value.extra["mismatches"]
    assert any("user_prior_balance" in m and "1000" in m for m in mismatches)
    assert any("maker_prior_balance" in m and "5000" in m for m in mismatches)
    assert fake_sponsor.calls == [], "❌ FAIL: sponsor signed a bet with forged balances"
    assert len(replay_window) == 0

    # The quote was not spent: the ledger's balances still build
    outcome = await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)
    assert outcome.payload.action == ACTION_PLACE_BET


async def test_balance_check_follows_ledger_updates(services, quotes, ledger_node, user, maker):
    ledger_node.set_account(ACCOUNTS_TABLE_ID, user.address, 950)
    quote_json = quotes.as_json(quotes.bet(user.address, maker.address))

    with pytest.raises(ParameterMismatch):
        await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)

    params = bet_params(user, maker, user_prior_balance=950, user_new_balance=900)
    outcome = await services.build_sponsored(ACTION_PLACE_BET, params, quote_json)
    assert outcome.payload.sender == user.address


async def test_account_without_ledger_row_has_zero_balance(services, quotes, user):
    fresh_maker = SuiKeypair()
    quote_json = quotes.as_json(quotes.bet(user.address, fresh_maker.address))

    with pytest.raises(ParameterMismatch):
        await services.build_sponsored(
            ACTION_PLACE_BET,
            bet_params(user, fresh_maker, maker_prior_balance=100, maker_new_balance=150),
            quote_json,
        )

    params = bet_params(user, fresh_maker, maker_prior_balance=0, maker_new_balance=50)
    outcome = await services.build_sponsored(ACTION_PLACE_BET, params, quote_json)
    assert outcome.payload.action == ACTION_PLACE_BET


async def test_scenario_b_build_sign_submit_resubmit(services, quotes, user, maker, ledger_node):
    quote_json = quotes.as_json(quotes.bet(user.address, maker.address))
    outcome = await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)

    tx_b64 = outcome.sponsored.tx_bytes_b64
    sender_signature = user.sign_transaction(outcome.sponsored.tx_bytes)

    first = await services.execute_sponsored(tx_b64, outcome.sponsored.sponsor_signature, sender_signature)
    second = await services.execute_sponsored(tx_b64, outcome.sponsored.sponsor_signature, sender_signature)

    assert first.digest == outcome.sponsored.digest
    assert second.digest == first.digest
    assert len(ledger_node.executed) == 1


async def test_scenario_c_enclave_timeout_spends_nothing(services, enclave, replay_window):
    enclave.raise_on["process_data"] = httpx.ConnectTimeout("enclave unreachable")
    with pytest.raises(UpstreamUnavailable):
        await services.proxy.forward("process_data", {"pool_id": 7})
    assert len(replay_window) == 0


async def test_malformed_enclave_response_is_bad_signature(services, user, maker):
    with pytest.raises(BadSignature):
        await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), {"response": {"intent": 0}})


async def test_execute_rejects_non_base64_bytes(services):
    with pytest.raises(SignatureMismatch):
        await services.execute_sponsored("%%%not-base64%%%", "AA==", "AA==")


async def test_restarted_enclave_key_is_rebound_once(services, registry, enclave, clock, user, maker):
    """The enclave restarted with a fresh key: verification refreshes the binding and retries."""
    services.debug_public_key = ""
    fresh_key = Ed25519PrivateKey.generate()
    enclave.public_key_hex = enclave_public_key_hex(fresh_key)

    fresh_quotes = QuoteFactory(fresh_key, clock)
    quote_json = fresh_quotes.as_json(fresh_quotes.bet(user.address, maker.address))
    outcome = await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)

    assert outcome.payload.sender == user.address
    assert registry.is_trusted(enclave.public_key_hex)


async def test_deposit_funding_is_resolved_through_ledger(services, ledger_node, quotes, user, enclave_pk):
    coin_a, coin_b = object_id(0x41), object_id(0x42)
    ledger_node.add_owned(coin_a, user.address, fields={"balance": "400", "id": {"id": coin_a}})
    ledger_node.add_owned(coin_b, user.address, fields={"balance": "400", "id": {"id": coin_b}})

    funding = await services.resolve_funding(user.address, [coin_a, coin_b])
    assert [c.balance for c in funding] == [400, 400]
    assert [c.ref.object_id for c in funding] == [coin_a, coin_b]

    quote_json = quotes.as_json(quotes.balance_change(IntentScope.DEPOSIT, user.address, 700, 0))
    outcome = await services.build_sponsored(
        ACTION_DEPOSIT, DepositParams(user.address, 700, tuple(funding)), quote_json
    )
    assert outcome.payload.action == ACTION_DEPOSIT


async def test_funding_coin_owned_by_someone_else_is_mismatch(services, ledger_node, user, maker):
    coin = object_id(0x43)
    ledger_node.add_owned(coin, maker.address, fields={"balance": "10"})
    with pytest.raises(ParameterMismatch):
        await services.resolve_funding(user.address, [coin])


async def test_rotation_installs_only_after_update_pcrs_is_final(services, registry, ledger_node, authority, chain,
                                                                  enclave_pk, initial_record):
    ledger_node.add_owned(chain.pcr_update_cap_id, authority.address)
    record = AttestationRecord(version=2, pcr0="b0" * 48, pcr1="b1" * 48, pcr2="b2" * 48)
    authorization = authority.sign_personal_message(record.statement(registry.enclave_config_id))

    staged, outcome = await services.rotate_attestation(record, authorization)

    assert staged.version == 2
    assert staged.authorized_by == authority.address
    assert outcome.payload.action == ACTION_UPDATE_PCRS
    assert outcome.payload.sender == authority.address
    assert registry.pending_rotations() == {outcome.sponsored.digest: staged}
    assert registry.current() == initial_record, "❌ FAIL: record installed before update_pcrs ran"
    assert registry.is_trusted(enclave_pk)

    authority_signature = authority.sign_transaction(outcome.sponsored.tx_bytes)
    result = await services.execute_sponsored(
        outcome.sponsored.tx_bytes_b64, outcome.sponsored.sponsor_signature, authority_signature
    )

    assert result.digest == outcome.sponsored.digest
    assert registry.current().version == 2
    assert registry.current().pcr0 == "b0" * 48
    assert registry.pending_rotations() == {}
    assert not registry.is_trusted(enclave_pk)


async def test_rotation_never_executed_leaves_record_unchanged(services, registry, ledger_node, authority, chain,
                                                               enclave_pk, initial_record, quotes, user, maker):
    ledger_node.add_owned(chain.pcr_update_cap_id, authority.address)
    record = AttestationRecord(version=2, pcr0="b0" * 48, pcr1="b1" * 48, pcr2="b2" * 48)
    authorization = authority.sign_personal_message(record.statement(registry.enclave_config_id))

    await services.rotate_attestation(record, authorization)

    assert registry.current() == initial_record
    assert registry.is_trusted(enclave_pk)
    assert ledger_node.execute_calls == []

    # Unrelated transactions executing does not install the staged record
    quote_json = quotes.as_json(quotes.bet(user.address, maker.address))
    bet = await services.build_sponsored(ACTION_PLACE_BET, bet_params(user, maker), quote_json)
    await services.execute_sponsored(
        bet.sponsored.tx_bytes_b64, bet.sponsored.sponsor_signature, user.sign_transaction(bet.sponsored.tx_bytes)
    )

    assert registry.current() == initial_record, "❌ FAIL: unexecuted rotation changed the current record"
    assert registry.is_trusted(enclave_pk)


async def test_failed_update_pcrs_keeps_rotation_pending(services, registry, ledger_node, authority, chain,
                                                         initial_record):
    ledger_node.add_owned(chain.pcr_update_cap_id, authority.address)
    ledger_node.reject_with = "Transaction has non-existent or wrong version of input object"
    record = AttestationRecord(version=2, pcr0="b0" * 48, pcr1="b1" * 48, pcr2="b2" * 48)
    authorization = authority.sign_personal_message(record.statement(registry.enclave_config_id))

    _, outcome = await services.rotate_attestation(record, authorization)
    with pytest.raises(SubmissionRejected):
        await services.execute_sponsored(
            outcome.sponsored.tx_bytes_b64,
            outcome.sponsored.sponsor_signature,
            authority.sign_transaction(outcome.sponsored.tx_bytes),
        )

    assert registry.current() == initial_record
    assert outcome.sponsored.digest in registry.pending_rotations()


async def test_unauthorized_rotation_touches_nothing(services, registry, fake_sponsor, initial_record):
    record = AttestationRecord(version=2, pcr0="b0" * 48, pcr1="b1" * 48, pcr2="b2" * 48)
    authorization = SuiKeypair().sign_personal_message(record.statement(registry.enclave_config_id))

    with pytest.raises(Unauthorized):
        await services.rotate_attestation(record, authorization)
    assert registry.current() == initial_record
    assert fake_sponsor.calls == []


async def test_chain_state_loading(services, registry, ledger_node, chain):
    chain.initial_versions["vault"] = 0
    ledger_node.add_shared(chain.vault_id, 31)
    ledger_node.add_shared(chain.enclave_config_id, 3, fields={
        "pcrs": {"fields": {"pos0": list(bytes(48)), "pos1": list(bytes(48)), "pos2": list(bytes(48))}},
        "version": "9",
    })

    await services.resolve_shared_versions()
    record = await services.load_attestation_from_chain()

    assert chain.initial_versions["vault"] == 31
    assert record.version == 9
    assert registry.current() == record
    assert registry.trusted_keys() == []
