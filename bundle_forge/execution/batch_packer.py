"""
Batch Packer
============
Groups independent operations into the fewest transactions that fit a
static instruction bound and the network byte ceiling.

Algorithm:
    operations ──chunk(max_ops_per_batch)──► candidate batches
                                               │ compile MessageV0 (+ALT)
                                               │ populate signatures
                                               ▼
                                 size ≤ max_bytes ? batch : rejected

Input order is preserved across chunks and nothing is reordered for size.
Oversized chunks are rejected, never split or truncated here: the static
chunk bound is conservative so overflow is rare.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from bundle_forge.config.settings import Settings
from bundle_forge.execution.types import LookupTableHandle, Operation, TransactionBatch
from bundle_forge.shared.execution.errors import OversizeBatchError, SignerResolutionError
from bundle_forge.shared.execution.schemas import LookupTableSnapshot
from bundle_forge.shared.system.logging import Logger


SignerResolver = Callable[[Operation], Union[Keypair, Sequence[Keypair], None]]
PLACEHOLDER_BLOCKHASH = Hash.default()


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PackerConfig:
    max_bytes: int = Settings.MAX_TX_BYTES
    max_ops_per_batch: int = Settings.MAX_OPS_PER_BATCH
    max_signers: int = Settings.MAX_SIGNERS_PER_TX


@dataclass(frozen=True)
class RejectedChunk:
    """A chunk that could not be packed as-is. The caller must repartition it."""

    chunk_index: int
    operations: tuple
    first_operation_index: int
    size: int
    reason: str


@dataclass
class PackResult:
    """Ordered batches plus the chunks that were rejected."""

    batches: List[TransactionBatch] = field(default_factory=list)
    rejected: List[RejectedChunk] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.rejected

    def __iter__(self):
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def __getitem__(self, idx):
        return self.batches[idx]


# ═══════════════════════════════════════════════════════════════════════════════
# SIGNER RESOLUTION
# ═══════════════════════════════════════════════════════════════════════════════

class KeyringResolver:
    """
    Default signer resolver: every account an instruction flags as signer must
    be backed by a known keypair.
    """

    def __init__(self, keypairs: Iterable[Keypair]):
        self._by_pubkey: Dict[Pubkey, Keypair] = {}
        for kp in keypairs:
            self._by_pubkey.setdefault(kp.pubkey(), kp)

    def __call__(self, operation: Operation) -> List[Keypair]:
        resolved = []
        for key in operation.required_signers:
            keypair = self._by_pubkey.get(key)
            if keypair is None:
                raise SignerResolutionError(
                    f"No signing identity for {operation!r}", account=str(key)
                )
            resolved.append(keypair)
        return resolved


def _as_list(resolved) -> List[Keypair]:
    if resolved is None:
        return []
    if isinstance(resolved, Keypair):
        return [resolved]
    return list(resolved)


def chunk(items: Sequence, size: int) -> List[list]:
    """Fixed-size partition preserving order; the last chunk may be short."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ═══════════════════════════════════════════════════════════════════════════════
# PACKER
# ═══════════════════════════════════════════════════════════════════════════════

class BatchPacker:
    """
    Usage:
        packer = BatchPacker(PackerConfig(max_ops_per_batch=5))
        first = packer.pack(ops, payer, resolver)             # no compaction
        ...create + extend the table, await Active...
        final = packer.pack(ops, payer, resolver, table=snapshot)
    """

    def __init__(self, config: Optional[PackerConfig] = None):
        self.config = config or PackerConfig()

    def pack(
        self,
        operations: Sequence[Operation],
        fee_payer: Keypair,
        signer_resolver: SignerResolver,
        table: Optional[Union[LookupTableSnapshot, LookupTableHandle]] = None,
        max_bytes: Optional[int] = None,
        max_ops_per_batch: Optional[int] = None,
        strict: bool = False,
    ) -> PackResult:
        max_bytes = max_bytes or self.config.max_bytes
        max_ops = max_ops_per_batch or self.config.max_ops_per_batch
        snapshot = self._active_snapshot(table)

        result = PackResult()
        for chunk_index, ops in enumerate(chunk(list(operations), max_ops)):
            first_index = chunk_index * max_ops
            signers = self._resolve_signers(ops, first_index, fee_payer, signer_resolver)
            batch = TransactionBatch(
                operations=ops,
                fee_payer=fee_payer,
                signers=signers,
                lookup_table=snapshot,
                index=len(result.batches),
            )
            batch.message = batch.compile(PLACEHOLDER_BLOCKHASH)
            self._check_signers(batch, first_index)
            batch.serialized_size = self.measure(batch)

            reason = None
            if len(signers) > self.config.max_signers:
                reason = f"{len(signers)} signers > {self.config.max_signers}"
            elif batch.serialized_size > max_bytes:
                reason = f"{batch.serialized_size}B > {max_bytes}B"

            if reason is None:
                result.batches.append(batch)
                Logger.debug(f"[PACKER] {batch!r}")
                continue

            if strict:
                raise OversizeBatchError(
                    f"Chunk {chunk_index} does not fit: {reason}",
                    size=batch.serialized_size,
                    limit=max_bytes,
                    operation_index=first_index,
                )
            Logger.warning(f"[PACKER] Chunk {chunk_index} rejected ({reason}), skipping {len(ops)} ops")
            result.rejected.append(RejectedChunk(
                chunk_index=chunk_index,
                operations=tuple(ops),
                first_operation_index=first_index,
                size=batch.serialized_size,
                reason=reason,
            ))

        compaction = f" with ALT ({len(snapshot)} entries)" if snapshot is not None else ""
        Logger.info(
            f"[PACKER] Packed {len(operations)} ops into {len(result.batches)} batches{compaction}"
            + (f", {len(result.rejected)} rejected" if result.rejected else "")
        )
        return result

    @staticmethod
    def measure(batch: TransactionBatch) -> int:
        """Exact signed size: populated placeholder signatures have the real width."""
        message = batch.message or batch.compile(PLACEHOLDER_BLOCKHASH)
        required = message.header.num_required_signatures
        tx = VersionedTransaction.populate(message, [Signature.default()] * required)
        return len(bytes(tx))

    @staticmethod
    def _active_snapshot(table) -> Optional[LookupTableSnapshot]:
        if table is None:
            return None
        if isinstance(table, LookupTableHandle):
            if not table.is_active:
                raise ValueError(f"{table!r} is not active; packing against it would not compact")
            return table.snapshot
        return table

    @staticmethod
    def _resolve_signers(
        ops: List[Operation],
        first_index: int,
        fee_payer: Keypair,
        signer_resolver: SignerResolver,
    ) -> List[Keypair]:
        signers = [fee_payer]
        seen = {fee_payer.pubkey()}
        for offset, op in enumerate(ops):
            try:
                resolved = _as_list(signer_resolver(op))
            except SignerResolutionError as e:
                e.operation_index = first_index + offset
                raise
            for kp in resolved:
                if kp.pubkey() not in seen:
                    seen.add(kp.pubkey())
                    signers.append(kp)
        return signers

    @staticmethod
    def _check_signers(batch: TransactionBatch, first_index: int) -> None:
        message = batch.message
        required = list(message.account_keys[:message.header.num_required_signatures])
        have = set(batch.signer_keys)
        missing = [key for key in required if key not in have]
        if missing:
            raise SignerResolutionError(
                f"Batch {batch.index} needs a signature the resolver did not supply",
                operation_index=first_index,
                account=str(missing[0]),
            )
        extra = [key for key in batch.signer_keys if key not in set(required)]
        if extra:
            raise SignerResolutionError(
                f"Batch {batch.index} resolver supplied a signer no instruction requires",
                operation_index=first_index,
                account=str(extra[0]),
            )
