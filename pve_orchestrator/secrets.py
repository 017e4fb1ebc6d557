"""
Secret providers for API credentials.

Secrets are decrypted in memory for the duration of a run. The vault
provider shells out to ``ansible-vault view`` so plaintext never touches the
disk and the encryption format stays whatever Ansible uses.
"""

import logging
import os
import stat
import subprocess
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .config import ApiCredentials, OrchestratorConfig, SecretSettings
from .errors import SecretError, ValidationError

logger = logging.getLogger(__name__)


class SecretProvider:
    """Looks secrets up by name"""

    def get(self, name: str) -> str:
        raise NotImplementedError


class EnvSecretProvider(SecretProvider):
    """Secrets from environment variables (proxmox_token_secret -> PVE_TOKEN_SECRET)"""

    ALIASES = {"proxmox_token_secret": "PVE_TOKEN_SECRET"}

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def get(self, name: str) -> str:
        for key in (self.ALIASES.get(name), name.upper(), name):
            if key and self.environ.get(key):
                return self.environ[key]
        raise SecretError(f"Secret '{name}' not set in environment")


class _MappingSecretProvider(SecretProvider):
    def __init__(self):
        self._data: Optional[Dict[str, object]] = None

    def _load(self) -> Dict[str, object]:
        raise NotImplementedError

    def get(self, name: str) -> str:
        if self._data is None:
            self._data = self._load()
        value = self._data.get(name)
        if value is None or value == "":
            raise SecretError(f"Secret '{name}' not found in {self.describe()}")
        return str(value)

    def describe(self) -> str:
        return self.__class__.__name__


class YamlFileSecretProvider(_MappingSecretProvider):
    """Plain YAML mapping of secret names to values"""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path).expanduser()

    def describe(self) -> str:
        return str(self.path)

    def _load(self) -> Dict[str, object]:
        if not self.path.exists():
            raise SecretError(f"Secret file not found: {self.path}")
        mode = self.path.stat().st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            logger.warning(f"Secret file {self.path} is readable by group/other, consider chmod 600")
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise SecretError(f"Secret file {self.path} is not valid YAML") from e
        if not isinstance(data, dict):
            raise SecretError(f"Secret file {self.path} must contain a mapping")
        return data


class AnsibleVaultSecretProvider(_MappingSecretProvider):
    """Ansible Vault encrypted YAML, decrypted with ansible-vault view"""

    def __init__(self, path: str, password_file: str, binary: str = "ansible-vault",
                 timeout: int = 60):
        super().__init__()
        self.path = Path(path).expanduser()
        self.password_file = Path(password_file).expanduser()
        self.binary = binary
        self.timeout = timeout

    def describe(self) -> str:
        return f"vault {self.path}"

    def _load(self) -> Dict[str, object]:
        if not self.path.exists():
            raise SecretError(f"Vault file not found: {self.path}")
        if not self.password_file.exists():
            raise SecretError(f"Vault password file not found: {self.password_file}")

        cmd = [self.binary, "view", "--vault-password-file", str(self.password_file), str(self.path)]
        logger.debug(f"Decrypting vault {self.path}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise SecretError(f"{self.binary} not found, install ansible-core") from e
        except subprocess.TimeoutExpired as e:
            raise SecretError(f"Decrypting {self.path} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            # stderr from ansible-vault never contains plaintext
            raise SecretError(f"Could not decrypt {self.path}: {result.stderr.strip()}")
        try:
            data = yaml.safe_load(result.stdout) or {}
        except yaml.YAMLError as e:
            raise SecretError(f"Decrypted vault {self.path} is not valid YAML") from e
        if not isinstance(data, dict):
            raise SecretError(f"Vault {self.path} must contain a mapping")
        return data


def build_provider(settings: SecretSettings) -> SecretProvider:
    """Secret provider selected by configuration"""
    if settings.provider == "env":
        return EnvSecretProvider()
    if settings.provider == "file":
        if not settings.path:
            raise ValidationError("secrets.path is required for the file provider")
        return YamlFileSecretProvider(settings.path)
    if settings.provider == "vault":
        if not settings.path or not settings.password_file:
            raise ValidationError("secrets.path and secrets.password_file are required for the vault provider")
        return AnsibleVaultSecretProvider(settings.path, settings.password_file)
    raise ValidationError(f"Unknown secret provider '{settings.provider}'")


def load_credentials(config: OrchestratorConfig,
                     provider: Optional[SecretProvider] = None) -> ApiCredentials:
    """Resolve the Proxmox API token for this run"""
    provider = provider or build_provider(config.secrets)
    secret = provider.get(config.secrets.token_secret_key)
    credentials = ApiCredentials(token_id=config.proxmox.token_id, secret=secret)
    logger.info(f"Using API token {credentials}")
    return credentials
