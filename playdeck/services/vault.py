from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional
import asyncio
import logging
import os
import tempfile

import yaml
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from playdeck.core.config import get_settings
from playdeck.core.exceptions import ConfigurationError, DecryptionError, NotFoundError, ValidationError
from playdeck.core.security import encrypt_secret, decrypt_secret, encrypt_vault, decrypt_vault
from playdeck.models import Vault
from playdeck.services.audit import Actor, AuditService, ENGINE_ACTOR

settings = get_settings()
logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "run-"

@dataclass
class VaultHandle:
    """Secrets made available to a single run.

    `vars_path` points at a decrypted extra-vars file that is deleted when the
    run's `resolve()` block exits. An empty handle means the run has no vault.
    """
    vault_id: Optional[str] = None
    password: str = ""
    vars_path: Optional[Path] = None

    @property
    def is_empty(self) -> bool:
        return self.vault_id is None


class VaultService:
    """Stores vault records. Payloads are encrypted before they reach the database."""
    def __init__(self, db: Session, audit: Optional[AuditService] = None, ip: str = ""):
        self.db = db
        self.audit = audit
        self.ip = ip

    def list_vaults(self) -> List[Vault]:
        return list(self.db.exec(select(Vault).order_by(Vault.name)).all())

    def get_vault(self, vault_id: str) -> Vault:
        vault = self.db.get(Vault, vault_id)
        if not vault:
            raise NotFoundError("vault", vault_id)
        return vault

    def create_vault(self, name: str, password: str, description: str = "", actor: Actor = ENGINE_ACTOR) -> Vault:
        if not password:
            raise ConfigurationError("A vault needs a password")
        vault = Vault(name=name, description=description, password_enc=encrypt_secret(password))
        self.db.add(vault)
        self.db.commit()
        self.db.refresh(vault)
        if self.audit:
            self.audit.record(actor, "create", "vault", vault.id, {"name": name}, ip=self.ip)
        return vault

    def set_payload(self, vault_id: str, plain_text: str, file_name: str = "", actor: Actor = ENGINE_ACTOR) -> Vault:
        """Encrypts `plain_text` with the vault's password and stores it.

        An empty `plain_text` clears the payload ("no file uploaded").

        Raises:
            ValidationError: The content is not a YAML mapping.
        """
        vault = self.get_vault(vault_id)
        if plain_text:
            try:
                data = yaml.safe_load(plain_text)
            except yaml.YAMLError as e:
                raise ValidationError("content", f"not valid YAML: {e}")
            if data is not None and not isinstance(data, dict):
                raise ValidationError("content", "must be a mapping of variables")
            vault.vault_blob = encrypt_vault(plain_text, decrypt_secret(vault.password_enc))
            vault.vault_file_name = file_name
        else:
            vault.vault_blob = ""
            vault.vault_file_name = ""
        self.db.add(vault)
        self.db.commit()
        self.db.refresh(vault)
        if self.audit:
            self.audit.record(actor, "update", "vault", vault.id, {"file_name": vault.vault_file_name}, ip=self.ip)
        return vault


class VaultResolver:
    """Decrypts a vault for exactly one run and guarantees the plaintext is removed."""
    def __init__(self, engine: Engine, audit: AuditService, scratch_dir: Optional[Path] = None):
        self.engine = engine
        self.audit = audit
        self.scratch_dir = Path(scratch_dir or settings.VAULT_SCRATCH_DIR)

    def _load(self, vault_id: str) -> Vault:
        with Session(self.engine) as session:
            vault = session.get(Vault, vault_id)
            if not vault:
                raise DecryptionError(f"vault {vault_id} no longer exists")
            return vault

    @staticmethod
    def _decrypt(vault: Vault) -> tuple[str, str]:
        password = decrypt_secret(vault.password_enc)
        if not vault.has_file:
            return password, ""
        plain = decrypt_vault(vault.vault_blob, password)
        try:
            data = yaml.safe_load(plain)
        except yaml.YAMLError as e:
            raise DecryptionError("vault payload is not valid YAML") from e
        if data is not None and not isinstance(data, dict):
            raise DecryptionError("vault payload must be a mapping of variables")
        return password, plain

    def _write_scratch(self, run_id: str, plain: str) -> Path:
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix=f"{SCRATCH_PREFIX}{run_id}-", suffix=".yml", dir=self.scratch_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(plain)
        return Path(path)

    @asynccontextmanager
    async def resolve(self, vault_id: Optional[str], run_id: str) -> AsyncIterator[VaultHandle]:
        """Yields the secrets for `run_id`; the scratch file is unlinked on every exit path.

        Raises:
            DecryptionError: Bad password, corrupt blob, or a vanished vault.
        """
        if not vault_id:
            yield VaultHandle()
            return

        vault = self._load(vault_id)
        try:
            password, plain = await asyncio.to_thread(self._decrypt, vault)
        except DecryptionError as e:
            self.audit.record(
                ENGINE_ACTOR, "vault_decrypt_failed", "vault", vault_id,
                {"run_id": run_id, "error": e.message}, sensitive=True,
            )
            raise

        self.audit.record(ENGINE_ACTOR, "vault_access", "vault", vault_id, {"run_id": run_id}, sensitive=True)
        vars_path = self._write_scratch(run_id, plain) if plain else None
        try:
            yield VaultHandle(vault_id=vault_id, password=password, vars_path=vars_path)
        finally:
            if vars_path is not None:
                vars_path.unlink(missing_ok=True)
                logger.debug(f"Removed decrypted vault payload for run {run_id}")

    def sweep_orphans(self) -> int:
        """Deletes decrypted payloads left behind by a crashed process."""
        if not self.scratch_dir.exists():
            return 0
        removed = 0
        for path in self.scratch_dir.glob(f"{SCRATCH_PREFIX}*"):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logger.warning(f"Removed {removed} orphaned vault payload(s) from {self.scratch_dir}")
        return removed
