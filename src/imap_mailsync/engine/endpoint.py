"""Endpoint handles passed to the synchronization runner."""

from __future__ import annotations

from dataclasses import dataclass

from imap_mailsync.gateway.base import ConnectionGateway


@dataclass
class Endpoint:
    """An authenticated session to one mail store plus its capabilities.

    The runner owns an endpoint for the duration of a run and drives its
    gateway from a single task.
    """

    gateway: ConnectionGateway
    label: str
    root: tuple[str, ...] = ()
    case_insensitive: bool = False
    supports_create: bool = True
    supports_flags: bool = True
