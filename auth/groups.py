"""
auth/groups.py -- Group Membership Store.

Answers "which groups does this principal hold right now". Two
implementations, and a deployment uses exactly one of them (GROUP_SOURCE):

  DirectoryGroupStore -- the credential directory is the authority.
  LocalGroupStore     -- an in-process table, for deployments whose directory
                         has no group support. Seeded from LOCAL_GROUP_SEED.

There is deliberately no fallback from one to the other: two independent
"is user in group" paths drift apart, and the token issuer and the guard must
agree on a single answer.

Both stores enforce the closed group vocabulary on writes and treat
add/remove as idempotent.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import weakref
from collections.abc import Iterable, Mapping

from auth.directory import CredentialDirectory
from auth.errors import UnknownGroup

logger = logging.getLogger("authgate.auth.groups")


class GroupMembershipStore(abc.ABC):
    """Common contract and vocabulary check for both group sources."""

    def __init__(self, known_groups: Iterable[str]) -> None:
        self.known_groups: frozenset[str] = frozenset(known_groups)
        if not self.known_groups:
            raise ValueError("A group store needs a non-empty vocabulary.")

    def check_group(self, group: str) -> None:
        if group not in self.known_groups:
            raise UnknownGroup(group)

    @abc.abstractmethod
    async def get_groups(self, username: str) -> frozenset[str]: ...

    @abc.abstractmethod
    async def add_to_group(self, username: str, group: str) -> None: ...

    @abc.abstractmethod
    async def remove_from_group(self, username: str, group: str) -> None: ...

    async def list_groups_for_principal(self, username: str) -> list[str]:
        """Sorted, duplicate-free list for administrative callers."""
        return sorted(await self.get_groups(username))


class DirectoryGroupStore(GroupMembershipStore):
    """Reads and writes membership through the credential directory."""

    def __init__(self, directory: CredentialDirectory, known_groups: Iterable[str]) -> None:
        super().__init__(known_groups)
        self.directory = directory

    async def get_groups(self, username: str) -> frozenset[str]:
        groups = await self.directory.list_groups_for_user(username)
        # A directory may carry groups this deployment does not know about;
        # they can never satisfy a check, so drop them here.
        return frozenset(g for g in groups if g in self.known_groups)

    async def add_to_group(self, username: str, group: str) -> None:
        self.check_group(group)
        await self.directory.add_user_to_group(username, group)

    async def remove_from_group(self, username: str, group: str) -> None:
        self.check_group(group)
        await self.directory.remove_user_from_group(username, group)


class LocalGroupStore(GroupMembershipStore):
    """In-process membership table with per-principal write serialization.

    Writes for one principal go through that principal's asyncio.Lock so
    concurrent add/remove calls cannot lose updates. Reads return a frozen
    snapshot and never block on writers.

    The table lives only as long as the process. It is an explicitly chosen
    source of truth, not a cache in front of the directory.
    """

    def __init__(self, known_groups: Iterable[str], seed: Mapping[str, Iterable[str]] | None = None) -> None:
        super().__init__(known_groups)
        self._memberships: dict[str, frozenset[str]] = {}
        # A lock exists only while some writer holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        for username, groups in (seed or {}).items():
            groups = frozenset(groups)
            for group in groups:
                self.check_group(group)
            self._memberships[username] = groups

    def _lock_for(self, username: str) -> asyncio.Lock:
        lock = self._locks.get(username)
        if lock is None:
            lock = self._locks[username] = asyncio.Lock()
        return lock

    async def get_groups(self, username: str) -> frozenset[str]:
        return self._memberships.get(username, frozenset())

    async def add_to_group(self, username: str, group: str) -> None:
        self.check_group(group)
        async with self._lock_for(username):
            current = self._memberships.get(username, frozenset())
            if group not in current:
                self._memberships[username] = current | {group}
                logger.debug("Local group table: %s += %s", username, group)

    async def remove_from_group(self, username: str, group: str) -> None:
        self.check_group(group)
        async with self._lock_for(username):
            current = self._memberships.get(username, frozenset())
            if group in current:
                self._memberships[username] = current - {group}
                logger.debug("Local group table: %s -= %s", username, group)


def build_group_store(
    group_source: str,
    directory: CredentialDirectory,
    known_groups: Iterable[str],
    seed: Mapping[str, Iterable[str]] | None = None,
) -> GroupMembershipStore:
    """Pick the one group source configured for this deployment."""
    if group_source == "directory":
        logger.info("Group membership source: directory")
        return DirectoryGroupStore(directory, known_groups)
    if group_source == "local":
        logger.info("Group membership source: local table (%d seeded principals)", len(seed or {}))
        return LocalGroupStore(known_groups, seed)
    raise ValueError(f"Unknown group source: {group_source!r}")
