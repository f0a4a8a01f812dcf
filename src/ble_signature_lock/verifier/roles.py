"""
Maps discovered GATT characteristics onto the roles the protocol needs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# GATT UUIDs (must match the lock firmware)
SIGNER_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
CHALLENGE_INPUT_CHAR_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"
SIGNED_RESPONSE_CHAR_UUID = "0000fff2-0000-1000-8000-00805f9b34fb"
RESPONSE_STATE_CHAR_UUID = "0000fff3-0000-1000-8000-00805f9b34fb"

KNOWN_ATTRIBUTES = {
    SIGNER_SERVICE_UUID: "Crypto Signing Service",
    CHALLENGE_INPUT_CHAR_UUID: "Crypto challenge input buffer",
    SIGNED_RESPONSE_CHAR_UUID: "Crypto signed response buffer",
    RESPONSE_STATE_CHAR_UUID: "State of the signed response",
}


class ChannelRole(Enum):
    """Logical channels used by the authentication flow."""
    CHALLENGE_INPUT = CHALLENGE_INPUT_CHAR_UUID
    SIGNED_RESPONSE = SIGNED_RESPONSE_CHAR_UUID
    STATE_NOTIFICATION = RESPONSE_STATE_CHAR_UUID


def lookup(uuid: str, default: str = "Unknown") -> str:
    """Human readable name for a known attribute UUID."""
    return KNOWN_ATTRIBUTES.get(uuid.lower(), default)


@dataclass(frozen=True)
class ServiceDescriptor:
    """A discovered service and the UUIDs of its characteristics."""
    uuid: str
    characteristics: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoleBindings:
    """Characteristic identifier bound to each role, if found."""
    challenge_input: Optional[str] = None
    signed_response: Optional[str] = None
    state_notification: Optional[str] = None

    @property
    def complete(self) -> bool:
        return None not in (self.challenge_input, self.signed_response, self.state_notification)

    def channel_for(self, role: ChannelRole) -> Optional[str]:
        return {
            ChannelRole.CHALLENGE_INPUT: self.challenge_input,
            ChannelRole.SIGNED_RESPONSE: self.signed_response,
            ChannelRole.STATE_NOTIFICATION: self.state_notification,
        }[role]

    def role_of(self, channel_id: str) -> Optional[ChannelRole]:
        for role in ChannelRole:
            if self.channel_for(role) == channel_id:
                return role
        return None


@dataclass(frozen=True)
class RoleResolution:
    """Outcome of examining one connection's services."""
    bindings: RoleBindings = field(default_factory=RoleBindings)
    service_recognized: bool = False


def resolve_roles(services: Iterable[ServiceDescriptor]) -> RoleResolution:
    """
    Bind the protocol roles from a connection's discovered services.

    Only characteristics inside the signing service are considered;
    characteristics with unknown UUIDs are skipped.
    """
    found: dict[ChannelRole, str] = {}
    recognized = False

    for service in services:
        if service.uuid.lower() != SIGNER_SERVICE_UUID:
            logger.debug(f"[ROLES] Skipping service {service.uuid}")
            continue

        recognized = True
        for char_uuid in service.characteristics:
            try:
                role = ChannelRole(char_uuid.lower())
            except ValueError:
                logger.debug(f"[ROLES] Ignoring characteristic {char_uuid}")
                continue
            found[role] = char_uuid
            logger.debug(f"[ROLES] {role.name} -> {char_uuid} ({lookup(char_uuid)})")

    bindings = RoleBindings(
        challenge_input=found.get(ChannelRole.CHALLENGE_INPUT),
        signed_response=found.get(ChannelRole.SIGNED_RESPONSE),
        state_notification=found.get(ChannelRole.STATE_NOTIFICATION),
    )

    if not recognized:
        logger.warning("[ROLES] Signing service not found, device is not compatible")
    elif not bindings.complete:
        missing = [r.name for r in ChannelRole if bindings.channel_for(r) is None]
        logger.warning(f"[ROLES] Signing service is missing characteristics: {', '.join(missing)}")
    else:
        logger.info("[ROLES] Signing service recognized, all channels bound")

    return RoleResolution(bindings=bindings, service_recognized=recognized)
