"""
Submission helpers shared by the keeper and feeder loops.

A submission that fails with NONCE_CONFLICT gets exactly one resync of the
account sequence and one retry of the same item. Every other failure kind is
final for this pass. Each failure produces one classified log line carrying
the item, its id, the error kind and the next action.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from keeperbot.infra.clock import Clock
from keeperbot.ledger.errors import ErrorKind, LedgerError
from keeperbot.nonce import GasNonceController, SendFn, SubmissionResult

log = logging.getLogger("keeperbot")

_FAILURE_LEVELS = {
    ErrorKind.ALREADY_SETTLED: logging.INFO,
    ErrorKind.CIRCUIT_BREAKER_REJECTED: logging.INFO,
    ErrorKind.SYSTEM_PAUSED: logging.INFO,
    ErrorKind.INSUFFICIENT_FUNDS: logging.ERROR,
    ErrorKind.UNCLASSIFIED: logging.ERROR,
}

FailureHook = Callable[[SubmissionResult, str], Any]


def failure_kind(result: SubmissionResult) -> ErrorKind:
    """A reverted receipt without a classified error counts as UNCLASSIFIED."""
    return result.kind or ErrorKind.UNCLASSIFIED


def log_failure(loop: str, item: str, item_id: Any, result: SubmissionResult, action: str) -> None:
    kind = failure_kind(result)
    err = result.error.message if result.error else "transaction reverted"
    payload = {
        "event": "submission_failed",
        "loop": loop,
        "item": item,
        "id": item_id,
        "kind": kind.value,
        "action": action,
        "sequence": result.sequence,
        "err": err[:300],
    }
    if result.error and result.error.tx_hash:
        payload["tx"] = result.error.tx_hash
    log.log(_FAILURE_LEVELS.get(kind, logging.WARNING), json.dumps(payload))


async def submit_with_resync(
    controller: GasNonceController,
    label: str,
    send: SendFn,
    clock: Optional[Clock] = None,
    retry_delay_sec: float = 0.0,
    on_failure: Optional[FailureHook] = None,
) -> SubmissionResult:
    """
    Submit once; on a sequence conflict resync, optionally wait, and retry once.

    `on_failure(result, action)` is called for every failed attempt with
    action "retried" or "skipped".
    """
    result = await controller.submit(label, send)
    if result.success or failure_kind(result) is not ErrorKind.NONCE_CONFLICT:
        if not result.success and on_failure:
            on_failure(result, "skipped")
        return result

    if on_failure:
        on_failure(result, "retried")
    try:
        await controller.resync(reason=f"nonce_conflict:{label}")
    except LedgerError as exc:
        result.error = exc
        if on_failure:
            on_failure(result, "skipped")
        return result
    if retry_delay_sec > 0:
        await (clock or Clock()).sleep(retry_delay_sec)

    result = await controller.submit(label, send)
    if not result.success and on_failure:
        on_failure(result, "skipped")
    return result
