"""Filesystem-backed contract store for signflow.

Everything lives on disk as JSON + PDF files under ``~/.signflow/``.
No database required; one directory per contract.

Directory layout::

    ~/.signflow/
    ├── config.json         # Optional SignflowConfig overrides
    ├── contracts/
    │   ├── <contract-id>/
    │   │   ├── contract.json
    │   │   ├── source.pdf      (after upload)
    │   │   ├── evidence.pdf    (after first evidence generation)
    │   │   └── evidence.json
    └── audit/              # Append-only audit logs (JSONL)

Writes go through a single lock so a read-check-write cycle is atomic
within the process. ``save_contract(..., expected_version=n)`` rejects
the write with :class:`StaleContract` when someone else saved first.
"""

import json
import logging
import os
import re
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .config import DEFAULT_SIGNFLOW_DIR
from .errors import ContractNotFound, StaleContract
from .models import AuditEntry, Contract, ContractStatus

logger = logging.getLogger("signflow.store")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ContractStore:
    """Filesystem-backed CRUD for contracts, source PDFs and audit logs.

    Args:
        base_dir: Root directory for all signflow data.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base = Path(base_dir) if base_dir else DEFAULT_SIGNFLOW_DIR
        self._contracts_dir = self.base / "contracts"
        self._audit_dir = self.base / "audit"
        self._lock = threading.RLock()

        for d in (self._contracts_dir, self._audit_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def save_contract(
        self,
        contract: Contract,
        expected_version: Optional[int] = None,
    ) -> Contract:
        """Persist a contract, bumping its version.

        New audit entries on the contract are also appended to the JSONL log.

        Args:
            contract: Contract to persist (its ``version`` is updated in place).
            expected_version: Version the caller read; None skips the check.

        Returns:
            The saved contract.

        Raises:
            StaleContract: If the stored version differs from
                ``expected_version``.
        """
        contract_dir = self._contract_dir(contract.id)
        with self._lock:
            current = self._stored_version(contract.id)
            if expected_version is not None and current != expected_version:
                raise StaleContract(contract.id, expected_version, current)

            contract.version = current + 1
            if contract.updated_at is None:
                contract.updated_at = datetime.now(timezone.utc)
            contract_dir.mkdir(parents=True, exist_ok=True)

            json_path = contract_dir / "contract.json"
            tmp_path = contract_dir / "contract.json.tmp"
            tmp_path.write_text(contract.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, json_path)

            logged = {e.entry_id for e in self.get_audit_trail(contract.id)}
            for entry in contract.audit_trail:
                if entry.entry_id not in logged:
                    self.append_audit(entry)

        logger.info(
            "Saved contract %s v%d (%s)", contract.id[:8], contract.version, contract.title
        )
        return contract

    def load_contract(self, contract_id: str) -> Contract:
        """Load a contract by ID.

        Raises:
            ContractNotFound: If the contract doesn't exist.
        """
        if not _SAFE_ID.match(contract_id or ""):
            raise ContractNotFound(contract_id)
        json_path = self._contracts_dir / contract_id / "contract.json"
        if not json_path.exists():
            raise ContractNotFound(contract_id)
        data = json.loads(json_path.read_text(encoding="utf-8"))
        return Contract.model_validate(data)

    def update_contract(
        self,
        contract_id: str,
        mutate: Callable[[Contract], Contract],
    ) -> Contract:
        """Load, transform and save a contract as one atomic step.

        Concurrent updates for different signatories are serialized here,
        so neither overwrites the other.

        Args:
            contract_id: Contract to update.
            mutate: Receives the freshly loaded contract, returns the result.

        Returns:
            The saved contract.
        """
        with self._lock:
            contract = self.load_contract(contract_id)
            version = contract.version
            updated = mutate(contract)
            return self.save_contract(updated, expected_version=version)

    def list_contracts(
        self,
        status: Optional[ContractStatus] = None,
        client_id: Optional[str] = None,
    ) -> list[Contract]:
        """List contracts, optionally filtered by stored status or client.

        Returns:
            Contracts sorted by creation date (newest first).
        """
        contracts = []
        for contract_dir in self._contracts_dir.iterdir():
            json_path = contract_dir / "contract.json"
            if not json_path.exists():
                continue
            try:
                data = json.loads(json_path.read_text(encoding="utf-8"))
                contract = Contract.model_validate(data)
            except Exception as exc:
                logger.warning("Skipping invalid contract %s: %s", contract_dir.name, exc)
                continue
            if status is not None and contract.status != status:
                continue
            if client_id is not None and contract.client_id != client_id:
                continue
            contracts.append(contract)
        contracts.sort(key=lambda c: c.created_at, reverse=True)
        return contracts

    def delete_contract(self, contract_id: str) -> bool:
        """Delete a contract and its files. The audit log is kept.

        Returns:
            True if deleted, False if not found.
        """
        if not _SAFE_ID.match(contract_id or ""):
            return False
        contract_dir = self._contracts_dir / contract_id
        with self._lock:
            if contract_dir.exists():
                shutil.rmtree(contract_dir)
                logger.info("Deleted contract %s", contract_id[:8])
                return True
        return False

    # ------------------------------------------------------------------
    # Source PDF and evidence
    # ------------------------------------------------------------------

    def save_source(self, contract_id: str, pdf_data: bytes) -> Path:
        """Store the source PDF for a contract.

        Raises:
            ContractNotFound: If the contract doesn't exist.
        """
        self.load_contract(contract_id)
        path = self._contracts_dir / contract_id / "source.pdf"
        path.write_bytes(pdf_data)
        return path

    def get_source(self, contract_id: str) -> Optional[bytes]:
        """Read the source PDF, or None if none was uploaded."""
        if not _SAFE_ID.match(contract_id or ""):
            return None
        path = self._contracts_dir / contract_id / "source.pdf"
        if path.exists():
            return path.read_bytes()
        return None

    def save_evidence(self, contract_id: str, pdf_data: bytes, meta: dict) -> None:
        """Cache the evidence PDF and its metadata (digest, code, hashes)."""
        contract_dir = self._contract_dir(contract_id)
        with self._lock:
            (contract_dir / "evidence.pdf").write_bytes(pdf_data)
            (contract_dir / "evidence.json").write_text(
                json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8"
            )

    def get_evidence(self, contract_id: str) -> Optional[tuple[bytes, dict]]:
        """Return the cached ``(pdf_bytes, meta)``, or None."""
        if not _SAFE_ID.match(contract_id or ""):
            return None
        contract_dir = self._contracts_dir / contract_id
        pdf_path = contract_dir / "evidence.pdf"
        meta_path = contract_dir / "evidence.json"
        if not (pdf_path.exists() and meta_path.exists()):
            return None
        return pdf_path.read_bytes(), json.loads(meta_path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the log (JSONL format)."""
        log_path = self._audit_dir / f"{entry.contract_id}.jsonl"
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, contract_id: str) -> list[AuditEntry]:
        """Load the full audit trail for a contract, in chronological order."""
        if not _SAFE_ID.match(contract_id or ""):
            return []
        log_path = self._audit_dir / f"{contract_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except Exception:
                logger.warning("Skipping corrupt audit line for %s", contract_id[:8])
        return sorted(entries, key=lambda e: e.timestamp)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _contract_dir(self, contract_id: str) -> Path:
        if not _SAFE_ID.match(contract_id or ""):
            raise ContractNotFound(contract_id)
        return self._contracts_dir / contract_id

    def _stored_version(self, contract_id: str) -> int:
        json_path = self._contracts_dir / contract_id / "contract.json"
        if not json_path.exists():
            return 0
        data = json.loads(json_path.read_text(encoding="utf-8"))
        return int(data.get("version", 0))
