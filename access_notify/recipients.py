"""Role to recipient mapping used to decide who gets notified."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

WILDCARD = "*"


class RecipientsMap(Dict[str, List[str]]):
    """Mapping of role names (or the ``*`` wildcard) to raw recipient strings."""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "RecipientsMap":
        """Build a map from TOML-shaped input where each value is a string or a list of strings."""

        recipients = cls()
        for role, value in raw.items():
            if isinstance(value, str):
                recipients[role] = [value]
            elif isinstance(value, (list, tuple)):
                items: List[str] = []
                for item in value:
                    if not isinstance(item, str):
                        raise ValueError(f"unexpected type for recipients value {type(item).__name__}")
                    items.append(item)
                recipients[role] = items
            else:
                raise ValueError(f"unexpected type for recipients value {type(value).__name__}")
        return recipients

    def get_recipients_for(self, roles: Iterable[str], suggested_reviewers: Iterable[str] = ()) -> List[str]:
        """Return the de-duplicated recipients for *roles* plus *suggested_reviewers*.

        A role that is missing from the map, or mapped to an empty list, falls
        back to the wildcard recipients. Without a wildcard entry such a role
        contributes nothing.
        """

        recipients: Dict[str, None] = {}
        for role in roles:
            role_recipients = self.get(role) or self.get(WILDCARD) or []
            recipients.update(dict.fromkeys(role_recipients))

        recipients.update(dict.fromkeys(suggested_reviewers))
        return list(recipients)

    def get_all_recipients(self) -> List[str]:
        """Return every configured recipient once, regardless of role."""

        recipients: Dict[str, None] = {}
        for role_recipients in self.values():
            recipients.update(dict.fromkeys(role_recipients))
        return list(recipients)
