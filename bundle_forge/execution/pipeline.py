"""
Submission Pipeline
===================
The end-to-end flow, one step after another:

    pack (no table) ─► collect addresses from every operation ─► ensure_table
        (create/extend/await) ─► re-pack against the Active table ─► submit

The table gates re-packing: nothing compacted is built before the node
resolves every address.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundle_forge.execution.batch_packer import BatchPacker, PackResult, RejectedChunk, SignerResolver
from bundle_forge.execution.bundle_submitter import BundleSubmitter, MultiBundleOutcome
from bundle_forge.execution.lookup_table import AccountTableManager, unique_addresses
from bundle_forge.execution.submission import SubmissionCoordinator
from bundle_forge.execution.types import LookupTableHandle, Operation, TransactionBatch
from bundle_forge.shared.execution.execution_result import SubmissionOutcome
from bundle_forge.shared.system.logging import Logger


class SubmitPath(Enum):
    DIRECT = "direct"
    BUNDLE = "bundle"


@dataclass(frozen=True)
class PipelineConfig:
    path: SubmitPath = SubmitPath.BUNDLE
    use_lookup_table: bool = True
    stop_on_failure: bool = True
    commitment: Optional[str] = None


@dataclass
class PipelineResult:
    batches: List[TransactionBatch] = field(default_factory=list)
    rejected: List[RejectedChunk] = field(default_factory=list)
    table: Optional[LookupTableHandle] = None
    outcomes: List[SubmissionOutcome] = field(default_factory=list)
    bundles: Optional[MultiBundleOutcome] = None

    @property
    def ok(self) -> bool:
        if self.rejected or not self.batches:
            return False
        if self.bundles is not None:
            return self.bundles.all_accepted
        return len(self.outcomes) == len(self.batches) and all(o.definitely_succeeded for o in self.outcomes)


def collect_table_addresses(operations: Sequence[Operation], fee_payer: Optional[Pubkey] = None) -> List[Pubkey]:
    """
    Non-signer, non-program accounts in first-use order; only these can be looked up.

    Taken from the operations rather than packed batches so chunks that only
    fit once compacted still get their accounts into the table.
    """
    signers = {s for op in operations for s in op.required_signers}
    if fee_payer is not None:
        signers.add(fee_payer)
    programs = {op.program_id for op in operations}
    collected = [
        account
        for op in operations
        for account in op.accounts
        if account not in signers and account not in programs
    ]
    return unique_addresses(collected)


class SubmissionPipeline:
    """
    Usage:
        pipeline = SubmissionPipeline(packer, manager, coordinator, bundles)
        result = await pipeline.run(ops, payer, KeyringResolver(wallets))
    """

    def __init__(
        self,
        packer: BatchPacker,
        table_manager: Optional[AccountTableManager] = None,
        coordinator: Optional[SubmissionCoordinator] = None,
        bundle_submitter: Optional[BundleSubmitter] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.packer = packer
        self.table_manager = table_manager
        self.coordinator = coordinator
        self.bundle_submitter = bundle_submitter
        self.config = config or PipelineConfig()

        if self.config.path == SubmitPath.DIRECT and coordinator is None:
            raise ValueError("Direct path needs a SubmissionCoordinator")
        if self.config.path == SubmitPath.BUNDLE and bundle_submitter is None:
            raise ValueError("Bundle path needs a BundleSubmitter")
        if self.config.use_lookup_table and table_manager is None:
            raise ValueError("Lookup table compaction needs an AccountTableManager")

    async def prepare(
        self,
        operations: Sequence[Operation],
        fee_payer: Keypair,
        signer_resolver: SignerResolver,
        authority: Optional[Keypair] = None,
    ) -> PipelineResult:
        """Pack, build the table and re-pack. Nothing is submitted."""
        result = PipelineResult()
        # Unresolvable signers raise here, before any table is paid for
        packed: PackResult = self.packer.pack(operations, fee_payer, signer_resolver)

        if self.config.use_lookup_table:
            addresses = collect_table_addresses(operations, fee_payer.pubkey())
            if addresses:
                result.table = await self.table_manager.ensure_table(authority or fee_payer, fee_payer, addresses)
                packed = self.packer.pack(operations, fee_payer, signer_resolver, table=result.table)
            else:
                Logger.info("[PIPELINE] No lookup-eligible accounts, skipping table")

        result.batches = list(packed.batches)
        result.rejected = list(packed.rejected)
        return result

    async def run(
        self,
        operations: Sequence[Operation],
        fee_payer: Keypair,
        signer_resolver: SignerResolver,
        authority: Optional[Keypair] = None,
    ) -> PipelineResult:
        Logger.section(f"Submitting {len(operations)} operations ({self.config.path.value})")
        result = await self.prepare(operations, fee_payer, signer_resolver, authority)

        if result.rejected:
            Logger.error(
                f"[PIPELINE] {len(result.rejected)} chunks do not fit a transaction; "
                "repartition them before submitting"
            )
            return result
        if not result.batches:
            Logger.warning("[PIPELINE] Nothing to submit")
            return result

        if self.config.path == SubmitPath.DIRECT:
            result.outcomes = await self.coordinator.submit_all(
                result.batches,
                commitment=self.config.commitment,
                stop_on_failure=self.config.stop_on_failure,
            )
        else:
            result.bundles = await self.bundle_submitter.submit(result.batches, fee_payer)
            result.outcomes = list(result.bundles.outcomes)

        if result.ok:
            Logger.success(f"[PIPELINE] {len(result.batches)} batches landed")
        else:
            Logger.warning(f"[PIPELINE] Finished with failures: {[o.status.value for o in result.outcomes]}")
        return result
