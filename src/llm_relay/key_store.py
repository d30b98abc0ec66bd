from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken


def generate_key() -> str:
    """A fresh urlsafe-base64 Fernet key, suitable for `KEYS_FERNET_KEY`."""
    return Fernet.generate_key().decode("utf-8")


@dataclass(frozen=True)
class StoredKeys:
    providers: dict[str, list[str]] = field(default_factory=dict)


class EncryptedKeyStore:
    """
    Provider API keys encrypted at rest.

    Stores ONE blob at `path`:
      - Fernet-encrypted JSON `{"providers": {"<provider>": ["<secret>", ...]}}`
    """

    def __init__(self, path: str | Path, fernet_key: str):
        self.path = Path(path)
        self._fernet = Fernet(fernet_key.encode("utf-8"))

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, keys: StoredKeys) -> None:
        raw = json.dumps({"providers": keys.providers}).encode("utf-8")
        self.path.write_bytes(self._fernet.encrypt(raw))

    def load(self) -> StoredKeys:
        try:
            raw = self._fernet.decrypt(self.path.read_bytes())
        except InvalidToken as e:
            raise ValueError(f"Failed to decrypt key file {self.path} (wrong key or corrupted file).") from e
        payload = json.loads(raw.decode("utf-8"))
        providers = payload.get("providers") if isinstance(payload, dict) else None
        if not isinstance(providers, dict):
            raise ValueError("Key file payload must be a JSON object with a 'providers' mapping.")
        out: dict[str, list[str]] = {}
        for provider, secrets in providers.items():
            if not isinstance(secrets, list) or not all(isinstance(s, str) for s in secrets):
                raise ValueError(f"Keys for provider {provider!r} must be a list of strings.")
            out[str(provider)] = list(secrets)
        return StoredKeys(providers=out)
