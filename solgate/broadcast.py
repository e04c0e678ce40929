"""
SolGate - Broadcast & Confirm
Submits a verified transaction and polls it to finalization under a deadline.

Delivery to the leader is not guaranteed, so the raw transaction is resent
until it is seen. Resending a landed transaction is harmless: the cluster
rejects duplicates by signature.
"""

import re
import time
import asyncio
import logging

import base58

from .network import Network, NetworkError
from .types import BroadcastOutcome
from .verifier import InvalidArtifact, decode_artifact, primary_signature

logger = logging.getLogger("solgate.broadcast")

DEFAULT_RESEND_EVERY_MS = 600

# Submission errors after which resending is pointless
ALREADY_PROCESSED = re.compile(
    r"already (been )?processed|recently finalized|transaction precompile verification failure",
    re.IGNORECASE,
)


async def broadcast_with_retry(
    network: Network,
    artifact: str,
    timeout_ms: int,
    resend_every_ms: int = DEFAULT_RESEND_EVERY_MS
) -> BroadcastOutcome:
    """
    Broadcast a signed transaction and wait for it to finalize.

    Args:
        network: Network collaborator
        artifact: base58 signed transaction
        timeout_ms: Overall deadline in milliseconds
        resend_every_ms: Delay between status polls / resends

    Returns:
        BroadcastOutcome: success, timeout or final_error
    """
    start = time.monotonic()

    try:
        tx = decode_artifact(artifact)
        signature = primary_signature(tx)
    except InvalidArtifact as e:
        logger.warning(f"Refusing to broadcast: {e}")
        return BroadcastOutcome.final_error("")

    wire = base58.b58decode(artifact.strip())

    # Simulation pass
    try:
        sim_err = await network.simulate(tx)
    except NetworkError as e:
        logger.warning(f"Simulation failed for {signature[:8]}...: {e}")
        return BroadcastOutcome.final_error(signature)
    if sim_err is not None:
        logger.info(f"Simulation rejected {signature[:8]}...: {sim_err}")
        return BroadcastOutcome.final_error(signature)

    # First send; preflight is redundant after simulating
    last_send_error = None
    try:
        await network.submit(wire, skip_preflight=True)
    except NetworkError as e:
        last_send_error = str(e)
        logger.debug(f"Initial send of {signature[:8]}... failed: {e}")

    # Poll + controlled resends
    while (time.monotonic() - start) * 1000 < timeout_ms:
        try:
            statuses = await network.get_statuses([signature], search_history=True)
            status = statuses[0] if statuses else None

            if status is not None and status.err is not None:
                logger.info(f"Transaction {signature[:8]}... failed on chain: {status.err}")
                return BroadcastOutcome.final_error(signature)
            if status is not None and status.finalized:
                logger.info(f"Transaction {signature[:8]}... finalized")
                return BroadcastOutcome.success(signature)
        except NetworkError as e:
            logger.warning(f"Status poll for {signature[:8]}... failed, retrying: {e}")

        if not (last_send_error and ALREADY_PROCESSED.search(last_send_error)):
            try:
                await network.submit(wire, skip_preflight=True)
                last_send_error = None
            except NetworkError as e:
                last_send_error = str(e)

        await asyncio.sleep(resend_every_ms / 1000)

    logger.info(f"Transaction {signature[:8]}... not finalized within {timeout_ms}ms")
    return BroadcastOutcome.timeout(signature)
