"""
CRITICAL TEST: Submission and Finality (scenario B)

- A dual-signed bundle is submitted once and waited on until final
- Resubmitting the identical bundle yields the same digest and does not
  apply effects twice
- Ledger rejections come back verbatim as SubmissionRejected
"""

import pytest

from relay.utils.errors import SubmissionRejected, Timeout
from relay.utils.submitter import TxSubmitter
from relay.utils.tx_builder import ACTION_WITHDRAW, WithdrawParams
from relay_canonical.constants import IntentScope


@pytest.fixture
async def bundle(builder, verifier, quotes, user, enclave_pk, sponsor_signer, coordinator):
    quote = quotes.balance_change(IntentScope.WITHDRAW, user.address, 300, 1_000)
    payload = builder.build(verifier.verify(quote, enclave_pk), ACTION_WITHDRAW, WithdrawParams(user.address, 300))
    sponsored = await sponsor_signer.sign(payload)
    return coordinator.merge(sponsored.tx_bytes, sponsored.sponsor_signature, user.sign_transaction(sponsored.tx_bytes))


async def test_submit_returns_final_effects(submitter, bundle, ledger_node):
    result = await submitter.submit(bundle)

    assert result.digest == bundle.digest
    assert result.effects["status"]["status"] == "success"
    assert result.checkpoint == "4242"
    assert ledger_node.execute_calls[0]["signatures"] == list(bundle.signatures), \
        "❌ FAIL: signatures must reach the ledger in [sender, sponsor] order"


async def test_resubmitting_identical_bundle_is_idempotent(submitter, bundle, ledger_node, mocker):
    spy = mocker.spy(submitter.ledger, "execute_transaction_block")

    first = await submitter.submit(bundle)
    second = await submitter.submit(bundle)

    assert first.digest == second.digest == bundle.digest
    assert spy.call_count == 2
    assert len(ledger_node.executed) == 1, "❌ FAIL: effects were applied twice"


async def test_ledger_rejection_is_verbatim(submitter, bundle, ledger_node):
    message = "Transaction has non recoverable errors from at least 1/3 of validators"
    ledger_node.reject_with = message

    with pytest.raises(SubmissionRejected) as exc:
        await submitter.submit(bundle)
    assert exc.value.detail == message
    assert exc.value.extra["digest"] == bundle.digest


async def test_failed_execution_is_rejected(submitter, bundle, ledger_node):
    ledger_node.execution_status = "failure"
    ledger_node.execution_error = "MoveAbort(vault::withdraw, 3)"

    with pytest.raises(SubmissionRejected) as exc:
        await submitter.submit(bundle)
    assert exc.value.detail == "MoveAbort(vault::withdraw, 3)"


async def test_submit_timeout_falls_back_to_finality_poll(submitter, bundle, ledger_node):
    ledger_node.timeout_on_execute = True

    result = await submitter.submit(bundle)

    assert result.digest == bundle.digest
    assert len(ledger_node.execute_calls) == 1, "❌ FAIL: the relay must never resubmit on its own"


async def test_finality_not_observed_is_timeout(ledger, bundle, ledger_node):
    ledger_node.timeout_on_execute = True
    ledger_node.apply_on_execute = False
    submitter = TxSubmitter(ledger, finality_timeout=0.2, poll_min_wait=0.01, poll_max_wait=0.02)

    with pytest.raises(Timeout) as exc:
        await submitter.submit(bundle)
    assert exc.value.retryable
    assert exc.value.extra["digest"] == bundle.digest
    assert len(ledger_node.execute_calls) == 1
