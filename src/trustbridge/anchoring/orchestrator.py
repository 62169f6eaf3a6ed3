"""Anchor orchestrator — commits a batch root to the settlement chain.

Drives one batch at a time through build → sign → broadcast, and later
through confirmation, writing every outcome back onto the batch.

State machine per batch:
    UNANCHORED → ANCHOR_PENDING → {ANCHORED | ANCHOR_FAILED}

Steps of anchor():
1. Derive the custody public key/address from the signing service.
2. Fetch custody inputs and fee rate; build the unsigned settlement
   transaction (InsufficientFunds if inputs do not exceed the fee).
3. Sign the deterministic digest of the unsigned transaction and
   encode the signed transaction.
4. Submit it through the broadcast service.

Failure handling:
- Any failure in steps 1-3 marks the batch ANCHOR_FAILED and re-raises.
  Exceptions outside the error taxonomy are re-raised as AnchorError.
  Nothing is retried automatically; the caller may call anchor() again.
- A TransportError in step 4 bumps ANCHOR_PENDING{attempt_count}. The
  returned outcome is marked retryable until max_anchor_attempts is
  reached, after which the batch is ANCHOR_FAILED.
- Calling anchor() on an ANCHORED batch is a no-op returning the stored
  outcome.

Once a broadcast is submitted it is awaited to completion. A second
anchor() on a batch whose attempt is still in flight does not start
another one; it returns the current outcome with in_flight set and
retryable unset, since the running attempt reports its own result.

confirm() asks the broadcast service whether the anchor transaction is
in a block, raises confirmation_height (never lowers it), and marks the
anchor final once it is confirmation_depth blocks deep.
"""

from __future__ import annotations

from typing import Optional

import structlog

from trustbridge.anchoring.collaborators import (
    BroadcastService,
    ChainQuery,
    CustodySource,
    SigningService,
    TransactionEncoder,
)
from trustbridge.anchoring.settlement import (
    DEFAULT_TX_VBYTES,
    build_settlement_tx,
    settlement_digest,
)
from trustbridge.batching.batcher import Batcher
from trustbridge.errors import (
    AnchorError,
    DecodeError,
    InsufficientFunds,
    SigningError,
    TransportError,
)
from trustbridge.models.batch import AnchorState, AnchorStatus, Batch
from trustbridge.models.settlement import AnchorOutcome

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ANCHOR_ATTEMPTS = 5
DEFAULT_CONFIRMATION_DEPTH = 6
DEFAULT_KEY_ID = "anchor_key_1"


class AnchorOrchestrator:
    """Drives build → sign → broadcast → confirm for batches.

    Parameters (via *config* dict):
        key_id               : str          — signing key name (default "anchor_key_1")
        derivation_path      : list[bytes]  — custody key derivation path (default [])
        max_anchor_attempts  : int          — broadcast attempts before failing (default 5)
        confirmation_depth   : int          — blocks for a final anchor (default 6)
        tx_vbytes            : int          — size used for fee estimation (default 250)
    """

    def __init__(
        self,
        batcher: Batcher,
        signer: SigningService,
        broadcaster: BroadcastService,
        custody: CustodySource,
        encoder: TransactionEncoder,
        chain_query: ChainQuery,
        config: Optional[dict] = None,
    ) -> None:
        config = config or {}
        self._batcher = batcher
        self._signer = signer
        self._broadcaster = broadcaster
        self._custody = custody
        self._encoder = encoder
        self._chain_query = chain_query

        self._key_id: str = config.get("key_id", DEFAULT_KEY_ID)
        self._derivation_path: tuple[bytes, ...] = tuple(config.get("derivation_path", ()))
        self._max_attempts: int = config.get("max_anchor_attempts", DEFAULT_MAX_ANCHOR_ATTEMPTS)
        self._confirmation_depth: int = config.get(
            "confirmation_depth", DEFAULT_CONFIRMATION_DEPTH,
        )
        self._tx_vbytes: int = config.get("tx_vbytes", DEFAULT_TX_VBYTES)

        if self._max_attempts < 1:
            raise ValueError(f"max_anchor_attempts must be >= 1, got {self._max_attempts}")
        if self._confirmation_depth < 1:
            raise ValueError(
                f"confirmation_depth must be >= 1, got {self._confirmation_depth}"
            )

        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    async def anchor(self, batch_id: str) -> AnchorOutcome:
        """Anchor one batch. See the module docstring for the failure policy.

        Raises:
            NotFound: Unknown batch id.
            InsufficientFunds, SigningError, TransportError, DecodeError:
                A step before broadcast failed; the batch is ANCHOR_FAILED.
            DecodeError: The broadcast response was malformed; the batch
                is ANCHOR_FAILED.
            AnchorError: A collaborator raised anything else; the batch
                is ANCHOR_FAILED.
        """
        batch = self._batcher.get_batch(batch_id)
        status = batch.anchor_status

        if status.state == AnchorState.ANCHORED:
            logger.debug("anchor_noop_already_anchored", batch_id=batch_id)
            return self.outcome(batch)
        if batch_id in self._in_flight:
            logger.info("anchor_already_in_flight", batch_id=batch_id)
            return self.outcome(batch, in_flight=True)

        # Attempts keep counting across scheduled retries; a manual
        # re-invocation after failure starts a fresh series.
        prior_attempts = (
            status.attempt_count if status.state == AnchorState.ANCHOR_PENDING else 0
        )

        self._in_flight.add(batch_id)
        try:
            self._batcher.set_anchor_status(batch_id, AnchorStatus.pending(prior_attempts))
            raw_tx = await self._prepare(batch, prior_attempts)
            return await self._broadcast(batch, raw_tx, prior_attempts)
        finally:
            self._in_flight.discard(batch_id)

    async def _prepare(self, batch: Batch, prior_attempts: int) -> bytes:
        """Steps 1-3. Any failure marks the batch failed and propagates."""
        try:
            key = await self._signer.derive_public_key(self._key_id, self._derivation_path)
            inputs = await self._custody.list_inputs(key.address)
            fee_rate = await self._custody.fee_rate()
            unsigned = build_settlement_tx(
                batch.root_fingerprint,
                inputs,
                fee_rate,
                change_address=key.address,
                tx_vbytes=self._tx_vbytes,
            )
            signature = await self._signer.sign(
                self._key_id, self._derivation_path, settlement_digest(unsigned),
            )
            return self._encoder.encode(unsigned, signature, key.public_key)
        except InsufficientFunds as e:
            self._fail(batch, str(e), prior_attempts)
            raise
        except SigningError as e:
            self._fail(batch, f"signing failed: {e}", prior_attempts)
            raise
        except (TransportError, DecodeError) as e:
            self._fail(batch, f"preparation failed: {e}", prior_attempts)
            raise
        except Exception as e:
            self._fail(batch, f"preparation failed: {e!r}", prior_attempts)
            raise AnchorError(f"Anchor preparation failed: {e!r}") from e

    async def _broadcast(self, batch: Batch, raw_tx: bytes, prior_attempts: int) -> AnchorOutcome:
        """Step 4. Transport errors are counted; anything else fails the batch."""
        attempts = prior_attempts + 1
        try:
            tx_ref = await self._broadcaster.submit(raw_tx)
        except TransportError as e:
            if attempts >= self._max_attempts:
                self._fail(
                    batch,
                    f"broadcast failed after {attempts} attempts: {e}",
                    attempts,
                )
                return self.outcome(batch)
            self._batcher.set_anchor_status(batch.batch_id, AnchorStatus.pending(attempts))
            logger.warning(
                "anchor_broadcast_failed",
                batch_id=batch.batch_id,
                attempt=attempts,
                max_attempts=self._max_attempts,
                error=str(e),
            )
            return self.outcome(batch, retryable=True)
        except DecodeError as e:
            self._fail(batch, f"broadcast response malformed: {e}", attempts)
            raise
        except Exception as e:
            self._fail(batch, f"broadcast failed: {e!r}", attempts)
            raise AnchorError(f"Anchor broadcast failed: {e!r}") from e

        provisional_height = await self._provisional_height()
        self._batcher.set_anchor_status(
            batch.batch_id,
            AnchorStatus.anchored(tx_ref, provisional_height, attempt_count=attempts),
        )
        logger.info(
            "anchor_submitted",
            batch_id=batch.batch_id,
            tx_ref=tx_ref,
            root=batch.root_fingerprint,
            provisional_height=provisional_height,
        )
        return self.outcome(batch)

    async def _provisional_height(self) -> Optional[int]:
        """Chain tip at broadcast time, or None if the tip is unavailable.

        The transaction is already submitted at this point, so a failed
        tip lookup must not fail the anchor. The height stays unknown
        until confirm() learns the real block height.
        """
        try:
            return await self._chain_query.tip_height()
        except (TransportError, DecodeError) as e:
            logger.warning("tip_height_unavailable", error=str(e))
            return None

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm(self, batch_id: str) -> AnchorOutcome:
        """Check the anchor transaction's depth and update the batch.

        A batch that is not ANCHORED, or is already final, is returned
        unchanged.

        Raises:
            NotFound: Unknown batch id.
            TransportError, DecodeError: The status or tip lookup failed.
        """
        batch = self._batcher.get_batch(batch_id)
        status = batch.anchor_status
        if status.state != AnchorState.ANCHORED or status.final:
            return self.outcome(batch)

        tx_status = await self._broadcaster.query_status(status.external_tx_ref)
        if not tx_status.confirmed:
            logger.debug("anchor_unconfirmed", batch_id=batch_id, tx_ref=status.external_tx_ref)
            return self.outcome(batch)
        if tx_status.block_height is None:
            raise DecodeError(
                f"Confirmed status for {status.external_tx_ref} has no block height"
            )

        tip = await self._chain_query.tip_height()
        depth = tip - tx_status.block_height + 1
        height = max(status.confirmation_height or 0, tx_status.block_height)
        final = depth >= self._confirmation_depth

        self._batcher.set_anchor_status(
            batch_id,
            AnchorStatus.anchored(
                status.external_tx_ref,
                height,
                final=final,
                attempt_count=status.attempt_count,
            ),
        )
        logger.info(
            "anchor_confirmation",
            batch_id=batch_id,
            tx_ref=status.external_tx_ref,
            block_height=tx_status.block_height,
            depth=depth,
            final=final,
        )
        return self.outcome(batch)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def outcome(
        self, batch: Batch, retryable: bool = False, in_flight: bool = False,
    ) -> AnchorOutcome:
        status = batch.anchor_status
        return AnchorOutcome(
            batch_id=batch.batch_id,
            state=status.state.value,
            external_tx_ref=status.external_tx_ref,
            confirmation_height=status.confirmation_height,
            final=status.final,
            attempt_count=status.attempt_count,
            reason=status.reason,
            retryable=retryable,
            in_flight=in_flight,
        )

    def _fail(self, batch: Batch, reason: str, attempts: int) -> None:
        self._batcher.set_anchor_status(
            batch.batch_id, AnchorStatus.failed(reason, attempt_count=attempts),
        )
        logger.error("anchor_failed", batch_id=batch.batch_id, reason=reason)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def confirmation_depth(self) -> int:
        return self._confirmation_depth
