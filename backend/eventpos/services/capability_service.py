# Overview: Boundary to the external capability gate; one authorization call per core operation.

"""
Capability Gate

The order core does not know about roles. Before every operation it asks
"may this actor do <capability> in <organization>?" and either continues or
propagates ForbiddenError unchanged.

A deployment plugs its own gate in through the CAPABILITY_GATE config key:

    def gate(actor, organization_id, capability) -> None:  # raise ForbiddenError to deny
        ...

The built-in gate only checks that the actor is scoped to the organization
and was granted the capability by the identity service.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..permissions import ALL_CAPABILITIES
from .errors import ForbiddenError


@dataclass(frozen=True)
class Actor:
    """Who is calling: a user, a registered device, or a guest online session."""

    organization_id: int
    user_id: int | None = None
    device_id: int | None = None
    capabilities: frozenset = field(default_factory=frozenset)

    def has(self, capability: str) -> bool:
        return ALL_CAPABILITIES in self.capabilities or capability in self.capabilities


def _default_gate(actor: Actor | None, organization_id: int, capability: str) -> None:
    if actor is None:
        raise ForbiddenError("Authentication required", details={"capability": capability})

    if actor.organization_id != organization_id:
        raise ForbiddenError(
            "No access to this organization",
            details={"organization_id": organization_id},
        )

    if not actor.has(capability):
        raise ForbiddenError(
            "Missing capability",
            details={"capability": capability},
        )


def authorize(actor: Actor | None, organization_id: int, capability: str) -> None:
    """Raise ForbiddenError unless the gate lets actor perform capability in the organization."""
    gate = current_app.config.get("CAPABILITY_GATE") or _default_gate
    gate(actor, organization_id, capability)


def authorize_actor(actor: Actor | None, capability: str) -> int:
    """Authorize actor inside its own organization and return that organization id."""
    organization_id = actor.organization_id if actor is not None else None
    authorize(actor, organization_id, capability)
    return organization_id


def session_actor(organization_id: int, capability: str) -> Actor:
    """Stand-in actor for a guest ordering session; carries only the one capability it needs."""
    return Actor(organization_id=organization_id, capabilities=frozenset({capability}))
