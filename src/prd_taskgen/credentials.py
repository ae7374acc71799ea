"""Read-only credential and setting lookup.

Values come from an optional session environment (as supplied by an editor
integration) with the process environment as fallback.
"""

import os
from collections.abc import Mapping
from typing import Iterator, Optional


class CredentialSource(Mapping):
    """Layered, read-only view over session env and ``os.environ``.

    Empty strings count as unset, so ``ANTHROPIC_API_KEY=`` does not make a
    provider look available.
    """

    def __init__(
        self,
        session_env: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._session_env = dict(session_env or {})
        self._environ = os.environ if environ is None else environ

    def __getitem__(self, key: str) -> str:
        value = self._session_env.get(key) or self._environ.get(key)
        if not value:
            raise KeyError(key)
        return value

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for source in (self._session_env, self._environ):
            for key in source:
                if key not in seen and source[key]:
                    seen.add(key)
                    yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    @classmethod
    def from_session(cls, session: Optional[object]) -> "CredentialSource":
        """Build from a session object exposing an ``env`` mapping."""
        env = getattr(session, "env", None) if session is not None else None
        if isinstance(session, Mapping):
            env = session.get("env")
        return cls(session_env=env or {})
