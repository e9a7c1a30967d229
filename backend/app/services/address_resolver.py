"""
Address resolver.

Maps an inbound recipient address to the internal identity it addresses:

  user{id}@<domain>        direct-id    -> user
  u-{id}@<domain>          prefixed-id  -> user
  {uuid}@<domain>          bare-uuid    -> user
  person-{tree_id}@<domain> person-tree -> tree

Prefixes come from IngestionConfig. Domains are accepted when they contain
one of the configured allowed domains, so subdomains pass.

resolve() returning None means "not a recognized addressing scheme", which the
pipeline reports differently from "recognized but the identity does not exist".
"""

import logging
import re
from typing import Callable, Optional

from app.config import IngestionConfig
from app.models.ingestion import MatchPattern, ResolvedRecipient

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)

_ANGLE_ADDR = re.compile(r"<([^>]+)>")

# A local-part rule returns a resolution or None when it does not apply.
LocalPartRule = Callable[[str], Optional[ResolvedRecipient]]


def extract_address(raw: str) -> str:
    """Unwrap ``"Name <addr@host>"`` to ``addr@host``."""
    match = _ANGLE_ADDR.search(raw)
    return (match.group(1) if match else raw).strip()


class AddressResolver:
    def __init__(self, config: IngestionConfig):
        self.allowed_domains = config.allowed_domains
        # Evaluated in order; first match wins.
        self._rules: list[LocalPartRule] = [
            self._prefix_rule(config.user_prefix, MatchPattern.DIRECT_ID),
            self._prefix_rule(config.short_user_prefix, MatchPattern.PREFIXED_ID),
            self._bare_uuid_rule,
            self._prefix_rule(config.person_prefix, MatchPattern.PERSON_TREE, tree=True),
        ]

    def resolve(self, to_address: str) -> Optional[ResolvedRecipient]:
        """Resolve a single address; None when it matches no scheme."""
        address = extract_address(to_address).lower()
        local_part, at, domain = address.rpartition("@")
        if not at or not local_part or not domain:
            return None

        if not self.is_allowed_domain(domain):
            logger.info(f"Rejecting recipient on disallowed domain {domain!r}")
            return None

        for rule in self._rules:
            resolved = rule(local_part)
            if resolved is not None:
                return resolved
        return None

    def resolve_any(self, to_field: str) -> Optional[ResolvedRecipient]:
        """
        Resolve the first recognized address in a To field.

        Providers may deliver a comma-separated recipient list; the first
        address that resolves wins.
        """
        for candidate in to_field.split(","):
            if not candidate.strip():
                continue
            resolved = self.resolve(candidate)
            if resolved is not None:
                return resolved
        return None

    def is_allowed_domain(self, domain: str) -> bool:
        return any(allowed in domain for allowed in self.allowed_domains)

    # ------------------------------------------------------------------
    # Local-part rules
    # ------------------------------------------------------------------

    @staticmethod
    def _prefix_rule(
        prefix: str, pattern: MatchPattern, tree: bool = False
    ) -> LocalPartRule:
        def rule(local_part: str) -> Optional[ResolvedRecipient]:
            if not prefix or not local_part.startswith(prefix):
                return None
            identity = local_part[len(prefix):]
            if not identity:
                return None
            if tree:
                return ResolvedRecipient(tree_id=identity, match_pattern=pattern)
            return ResolvedRecipient(user_id=identity, match_pattern=pattern)

        return rule

    @staticmethod
    def _bare_uuid_rule(local_part: str) -> Optional[ResolvedRecipient]:
        if UUID_PATTERN.match(local_part):
            return ResolvedRecipient(user_id=local_part, match_pattern=MatchPattern.BARE_UUID)
        return None


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value.lower()))
