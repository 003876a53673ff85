import hashlib
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from chatrelay import crud
from chatrelay.providers.base import ProviderCredential


def identity_for(api_key: str) -> str:
    """Stable identity derived from a caller's X-API-Key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CredentialContext:
    """Who is asking: an authenticated identity, a guest credential, or both."""

    identity: Optional[str] = None
    guest_credential: Optional[ProviderCredential] = None

    @property
    def is_guest(self) -> bool:
        return self.guest_credential is not None


class CredentialStore(Protocol):
    async def resolve(self, identity: str, provider: str) -> Optional[ProviderCredential]: ...


class SqlCredentialStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _lookup(self, identity: str, provider: str) -> Optional[ProviderCredential]:
        with Session(self._engine) as session:
            row = crud.get_provider_api_key(session=session, api_key_hash=identity, provider=provider)
            if row is None or not row.api_key:
                return None
            return ProviderCredential.of(row.api_key, **(row.params or {}))

    async def resolve(self, identity: str, provider: str) -> Optional[ProviderCredential]:
        return await run_in_threadpool(self._lookup, identity, provider)


class InMemoryCredentialStore:
    def __init__(self, keys: Optional[Dict[Tuple[str, str], ProviderCredential]] = None) -> None:
        self._keys = dict(keys or {})

    def put(self, identity: str, provider: str, credential: ProviderCredential) -> None:
        self._keys[(identity, provider)] = credential

    async def resolve(self, identity: str, provider: str) -> Optional[ProviderCredential]:
        return self._keys.get((identity, provider))
