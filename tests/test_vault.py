import json
import os
import stat

import pytest
from sqlmodel import select

from playdeck.core.exceptions import DecryptionError, ValidationError
from playdeck.core.security import decrypt_secret, decrypt_vault, encrypt_vault
from playdeck.models import AuditLog, Vault
from playdeck.services.vault import VaultResolver, VaultService

from conftest import USER


def test_vault_round_trip():
    blob = encrypt_vault("db_password: hunter2\n", "s3cret")
    assert "hunter2" not in blob
    assert decrypt_vault(blob, "s3cret") == "db_password: hunter2\n"


def test_wrong_password_raises():
    blob = encrypt_vault("token: abc\n", "right")
    with pytest.raises(DecryptionError):
        decrypt_vault(blob, "wrong")


@pytest.mark.parametrize("blob", ["", "no-separator", "c2FsdA==$not-a-token"])
def test_corrupt_blob_raises(blob):
    with pytest.raises(DecryptionError):
        decrypt_vault(blob, "pw")


def test_vault_service_encrypts_at_rest(db, audit):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret", actor=USER)
    vault = service.set_payload(vault.id, "api_key: xyz\n", file_name="prod.yml", actor=USER)

    assert vault.password_enc != "s3cret"
    assert decrypt_secret(vault.password_enc) == "s3cret"
    assert "xyz" not in vault.vault_blob
    assert vault.has_file

    vault = service.set_payload(vault.id, "", actor=USER)
    assert not vault.has_file
    assert vault.vault_file_name == ""


@pytest.mark.asyncio
async def test_resolve_without_vault_yields_empty_handle(engine, audit, scratch_dir):
    resolver = VaultResolver(engine, audit, scratch_dir)
    async with resolver.resolve(None, "run-1") as handle:
        assert handle.is_empty
        assert handle.vars_path is None


@pytest.mark.asyncio
async def test_resolve_writes_private_file_and_removes_it(db, engine, audit, scratch_dir):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret")
    service.set_payload(vault.id, "api_key: xyz\n")
    resolver = VaultResolver(engine, audit, scratch_dir)

    async with resolver.resolve(vault.id, "run-42") as handle:
        assert handle.password == "s3cret"
        assert handle.vars_path.name.startswith("run-run-42-")
        assert handle.vars_path.read_text() == "api_key: xyz\n"
        assert stat.S_IMODE(os.stat(handle.vars_path).st_mode) == 0o600
        path = handle.vars_path

    assert not path.exists()
    logs = db.exec(select(AuditLog).where(AuditLog.action == "vault_access")).all()
    assert len(logs) == 1
    assert json.loads(logs[0].details) == {"run_id": "run-42"}


@pytest.mark.asyncio
async def test_resolve_cleans_up_when_the_run_raises(db, engine, audit, scratch_dir):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret")
    service.set_payload(vault.id, "k: v\n")
    resolver = VaultResolver(engine, audit, scratch_dir)

    with pytest.raises(RuntimeError):
        async with resolver.resolve(vault.id, "run-7") as handle:
            path = handle.vars_path
            raise RuntimeError("runner crashed")
    assert not path.exists()
    assert list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_resolve_rejects_non_mapping_payload(db, engine, audit, scratch_dir):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret")
    row = db.get(Vault, vault.id)
    row.vault_blob = encrypt_vault("- just\n- a list\n", "s3cret")
    db.add(row)
    db.commit()
    resolver = VaultResolver(engine, audit, scratch_dir)

    with pytest.raises(DecryptionError, match="mapping"):
        async with resolver.resolve(vault.id, "run-8"):
            pass
    failed = db.exec(select(AuditLog).where(AuditLog.action == "vault_decrypt_failed")).all()
    assert len(failed) == 1


@pytest.mark.asyncio
async def test_resolve_with_wrong_stored_password(db, engine, audit, scratch_dir):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret")
    row = db.get(Vault, vault.id)
    row.vault_blob = encrypt_vault("k: v\n", "another-password")
    db.add(row)
    db.commit()
    resolver = VaultResolver(engine, audit, scratch_dir)

    with pytest.raises(DecryptionError):
        async with resolver.resolve(vault.id, "run-9"):
            pass
    assert not scratch_dir.exists() or list(scratch_dir.iterdir()) == []


def test_sweep_orphans(engine, audit, scratch_dir):
    scratch_dir.mkdir(parents=True)
    (scratch_dir / "run-abc-1234.yml").write_text("k: v")
    (scratch_dir / "run-def-5678.yml").write_text("k: v")
    (scratch_dir / "keep.txt").write_text("x")
    resolver = VaultResolver(engine, audit, scratch_dir)

    assert resolver.sweep_orphans() == 2
    assert [p.name for p in scratch_dir.iterdir()] == ["keep.txt"]


@pytest.mark.parametrize("content", ["- just\n- a list\n", "key: [unclosed\n", "plain words"])
def test_set_payload_requires_a_yaml_mapping(db, audit, content):
    service = VaultService(db, audit)
    vault = service.create_vault("prod", "s3cret")
    with pytest.raises(ValidationError) as exc:
        service.set_payload(vault.id, content)
    assert exc.value.field == "content"
    assert service.get_vault(vault.id).vault_blob == ""
