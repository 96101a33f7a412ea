"""Contact book and location adapters."""

from pulseguard.domain.models import EmergencyContact, GeoLocation


class StaticContactDirectory:
    """ContactDirectory over a fixed list, e.g. the EMERGENCY_CONTACTS setting."""

    def __init__(self, contacts: list[EmergencyContact] | None = None) -> None:
        self._contacts: dict[str, EmergencyContact] = {}
        for contact in contacts or []:
            self.add(contact)

    def __len__(self) -> int:
        return len(self._contacts)

    def add(self, contact: EmergencyContact) -> None:
        if contact.is_primary:
            # Only one primary contact at a time
            self._contacts = {
                cid: c.model_copy(update={"is_primary": False}) if c.is_primary else c
                for cid, c in self._contacts.items()
            }
        self._contacts[contact.id] = contact

    def remove(self, contact_id: str) -> None:
        self._contacts.pop(contact_id, None)

    def list_contacts(self) -> list[EmergencyContact]:
        return list(self._contacts.values())

    def get(self, contact_id: str) -> EmergencyContact | None:
        return self._contacts.get(contact_id)


class FixedLocationProvider:
    """LocationProvider that reports a configured location, or none at all."""

    def __init__(self, location: GeoLocation | None = None) -> None:
        self.location = location

    async def current_location(self) -> GeoLocation | None:
        return self.location
