"""Credential resolution at session-open time.

The core never persists secrets. A device only carries an opaque
``credential_ref``; the store turns it into ``Credentials`` when a session
is opened and the value is dropped once the transport has authenticated.
"""
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Connection secrets. Secret fields are excluded from ``repr``."""
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key_file: Optional[str] = field(default=None, repr=False)
    token: Optional[str] = field(default=None, repr=False)
    enable_secret: Optional[str] = field(default=None, repr=False)


class CredentialStore(ABC):
    """Resolves an opaque credential reference into secrets."""

    @abstractmethod
    def resolve(self, ref: str) -> Credentials:
        """Return credentials for ``ref`` or raise ``ConnectionError``."""


class StaticCredentialStore(CredentialStore):
    """In-memory mapping of reference to credentials."""

    def __init__(self, entries: Optional[dict[str, Credentials]] = None):
        self._entries: dict[str, Credentials] = dict(entries or {})

    def add(self, ref: str, credentials: Credentials) -> None:
        self._entries[ref] = credentials

    def resolve(self, ref: str) -> Credentials:
        try:
            return self._entries[ref]
        except KeyError:
            raise ConnectionError(
                "Credential reference could not be resolved",
                details={"credential_ref": ref},
            ) from None


class EnvCredentialStore(CredentialStore):
    """Read credentials from ``NETOPS_CRED_<REF>_*`` environment variables.

    ``REF`` is the reference upper-cased with non-alphanumerics replaced by
    ``_``. Recognised suffixes: ``USERNAME``, ``PASSWORD``, ``KEY_FILE``,
    ``TOKEN``, ``ENABLE``.
    """

    def __init__(self, prefix: str = "NETOPS_CRED"):
        self.prefix = prefix

    def _var(self, ref: str, suffix: str) -> str:
        key = re.sub(r"[^A-Za-z0-9]", "_", ref).upper()
        return f"{self.prefix}_{key}_{suffix}"

    def resolve(self, ref: str) -> Credentials:
        username = os.environ.get(self._var(ref, "USERNAME"))
        if not username:
            raise ConnectionError(
                "Credential reference could not be resolved",
                details={"credential_ref": ref},
            )
        logger.debug(f"Resolved credential reference {ref}")
        return Credentials(
            username=username,
            password=os.environ.get(self._var(ref, "PASSWORD")),
            private_key_file=os.environ.get(self._var(ref, "KEY_FILE")),
            token=os.environ.get(self._var(ref, "TOKEN")),
            enable_secret=os.environ.get(self._var(ref, "ENABLE")),
        )
