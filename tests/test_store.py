"""Tests for the signflow contract store."""

import pytest

from signflow.errors import ContractNotFound, StaleContract
from signflow.models import AuditAction, AuditEntry, Contract, ContractStatus
from signflow.store import ContractStore

from conftest import NOW


class TestContractStore:
    """Contract CRUD operations."""

    def test_save_and_load(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        loaded = tmp_store.load_contract(contract.id)
        assert loaded.title == "Service Agreement"
        assert len(loaded.signatories) == 2
        assert loaded.version == 1

    def test_save_bumps_version(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        tmp_store.save_contract(contract)
        assert tmp_store.load_contract(contract.id).version == 2

    def test_load_missing(self, tmp_store):
        with pytest.raises(ContractNotFound):
            tmp_store.load_contract("does-not-exist")

    def test_path_traversal_is_not_found(self, tmp_store):
        with pytest.raises(ContractNotFound):
            tmp_store.load_contract("../../etc")

    def test_list_and_filter(self, tmp_store):
        for i in range(3):
            tmp_store.save_contract(Contract(title=f"Contract {i}"))
        sent = Contract(title="Sent", status=ContractStatus.SENT, client_id="c-1")
        tmp_store.save_contract(sent)
        assert len(tmp_store.list_contracts()) == 4
        assert [c.title for c in tmp_store.list_contracts(status=ContractStatus.SENT)] == ["Sent"]
        assert [c.title for c in tmp_store.list_contracts(client_id="c-1")] == ["Sent"]

    def test_list_skips_corrupt(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        bad = tmp_store.base / "contracts" / "broken"
        bad.mkdir()
        (bad / "contract.json").write_text("{not json", encoding="utf-8")
        assert [c.id for c in tmp_store.list_contracts()] == [contract.id]

    def test_delete(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        assert tmp_store.delete_contract(contract.id) is True
        assert tmp_store.delete_contract(contract.id) is False
        with pytest.raises(ContractNotFound):
            tmp_store.load_contract(contract.id)


class TestConcurrency:
    """Version checks and atomic updates."""

    def test_expected_version_matches(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        tmp_store.save_contract(contract, expected_version=1)
        assert contract.version == 2

    def test_stale_write_rejected(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        first = tmp_store.load_contract(contract.id)
        second = tmp_store.load_contract(contract.id)
        tmp_store.save_contract(first, expected_version=first.version)
        with pytest.raises(StaleContract):
            tmp_store.save_contract(second, expected_version=second.version)

    def test_updates_for_different_signatories_both_land(
        self, tmp_store, engine, sent_contract, make_event
    ):
        tmp_store.save_contract(sent_contract)
        tmp_store.update_contract(
            sent_contract.id,
            lambda c: engine.apply_signature(c, "ana@example.com", make_event(), NOW),
        )
        tmp_store.update_contract(
            sent_contract.id,
            lambda c: engine.apply_signature(c, "bruno@example.com", make_event(), NOW),
        )
        stored = tmp_store.load_contract(sent_contract.id)
        assert all(s.signed for s in stored.signatories)
        assert stored.status == ContractStatus.SIGNED

    def test_failed_update_does_not_write(self, tmp_store, contract):
        tmp_store.save_contract(contract)

        def boom(c):
            c.title = "changed"
            raise ValueError("nope")

        with pytest.raises(ValueError):
            tmp_store.update_contract(contract.id, boom)
        assert tmp_store.load_contract(contract.id).title == "Service Agreement"


class TestSourceAndEvidence:
    def test_source_pdf(self, tmp_store, contract, sample_pdf):
        tmp_store.save_contract(contract)
        assert tmp_store.get_source(contract.id) is None
        tmp_store.save_source(contract.id, sample_pdf)
        assert tmp_store.get_source(contract.id) == sample_pdf

    def test_source_needs_contract(self, tmp_store, sample_pdf):
        with pytest.raises(ContractNotFound):
            tmp_store.save_source("missing", sample_pdf)

    def test_evidence_cache(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        assert tmp_store.get_evidence(contract.id) is None
        tmp_store.save_evidence(contract.id, b"%PDF-evidence", {"digest": "abc"})
        assert tmp_store.get_evidence(contract.id) == (b"%PDF-evidence", {"digest": "abc"})


class TestAuditStore:
    """Audit log operations."""

    def test_save_logs_new_entries_once(self, tmp_store, engine, contract):
        tmp_store.save_contract(contract)
        tmp_store.save_contract(contract)
        trail = tmp_store.get_audit_trail(contract.id)
        assert [e.action for e in trail] == [AuditAction.CREATED]

        engine.send(contract, NOW)
        tmp_store.save_contract(contract)
        trail = tmp_store.get_audit_trail(contract.id)
        assert [e.action for e in trail] == [AuditAction.CREATED, AuditAction.SENT]

    def test_append_and_read(self, tmp_store):
        for action in (AuditAction.CREATED, AuditAction.SENT, AuditAction.SIGNED):
            tmp_store.append_audit(AuditEntry(contract_id="c1", action=action))
        trail = tmp_store.get_audit_trail("c1")
        assert len(trail) == 3

    def test_empty_audit(self, tmp_store):
        assert tmp_store.get_audit_trail("nonexistent") == []

    def test_audit_survives_delete(self, tmp_store, contract):
        tmp_store.save_contract(contract)
        tmp_store.delete_contract(contract.id)
        assert tmp_store.get_audit_trail(contract.id)


def test_default_dir_is_created(tmp_path):
    store = ContractStore(tmp_path / "nested" / "data")
    assert (store.base / "contracts").is_dir()
    assert (store.base / "audit").is_dir()
