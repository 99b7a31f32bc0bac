"""
Discovery of the (source group, target groups) pairs to reconcile.

Pairs come from two places: the naming convention (``app-NESTED`` feeds
``app-UNNESTED``) and explicit legacy pairs for groups whose names predate
the convention.
"""

import logging
from typing import Dict, List, Optional

from ldap3.utils.conv import escape_filter_chars

from group_flatten.config import SyncConfig
from group_flatten.ldap_client import GroupNotFoundError
from group_flatten.models import GroupRef, Pair

logger = logging.getLogger(__name__)


def conventional_target_name(source_name: str, source_suffix: str, target_suffix: str) -> Optional[str]:
    """Swap the trailing source suffix for the target suffix, if present."""
    if not source_name.lower().endswith(source_suffix.lower()):
        return None
    return source_name[:len(source_name) - len(source_suffix)] + target_suffix


class PairingResolver:
    """Builds the ordered list of pairs for one run."""

    def __init__(self, gateway, config: SyncConfig, search_base: str):
        self.gateway = gateway
        self.config = config
        self.search_base = search_base
        self.server = config.server
        self.skipped_sources: List[str] = []

    def resolve(self) -> List[Pair]:
        """
        Resolve every source group and its targets.

        Returns:
            Pairs sorted by source group name, each with targets sorted by name
        """
        self.skipped_sources = []
        sources = self._discover_sources()
        pairs = []

        for source in sources:
            targets = self._resolve_targets(source)
            if not targets:
                logger.warning(f"No target group found for source group {source.name}, skipping")
                self.skipped_sources.append(source.name)
                continue
            pairs.append(Pair(source=source, targets=tuple(targets)))

        logger.info(f"Resolved {len(pairs)} group pairs ({len(self.skipped_sources)} sources skipped)")
        return pairs

    def _discover_sources(self) -> List[GroupRef]:
        suffix = self.config.source_suffix
        search_filter = f"(&(objectClass=group)(sAMAccountName=*{escape_filter_chars(suffix)}))"
        found = self.gateway.find_groups(self.search_base, search_filter, self.server)

        sources: Dict[str, GroupRef] = {}
        for group in found:
            if group.name.lower().endswith(suffix.lower()):
                sources.setdefault(group.name.lower(), group)
        logger.info(f"Found {len(sources)} groups ending in {suffix} under {self.search_base}")

        for legacy_name in self.config.legacy_pairs:
            if legacy_name.lower() in sources:
                continue
            try:
                group = self.gateway.get_group(legacy_name, self.server)
            except GroupNotFoundError:
                logger.warning(f"Legacy source group {legacy_name} does not exist, skipping its legacy pairs")
                continue
            logger.info(f"Added legacy source group {group.name}")
            sources[group.name.lower()] = group

        return sorted(sources.values(), key=lambda g: (g.name.lower(), g.dn.lower()))

    def _resolve_targets(self, source: GroupRef) -> List[GroupRef]:
        targets: Dict[str, GroupRef] = {}

        target_name = conventional_target_name(source.name, self.config.source_suffix, self.config.target_suffix)
        if target_name:
            group = self._lookup(target_name)
            if group is not None:
                targets[group.dn.lower()] = group
            else:
                logger.debug(f"No conventional target {target_name} for {source.name}")

        for legacy_name in self._legacy_targets_for(source.name):
            known = next((g for g in targets.values() if g.name.lower() == legacy_name.lower()), None)
            if known is not None:
                continue
            group = self._lookup(legacy_name)
            if group is None:
                logger.warning(f"Legacy target group {legacy_name} for {source.name} does not exist, ignoring it")
                continue
            targets.setdefault(group.dn.lower(), group)

        return sorted(targets.values(), key=lambda g: (g.name.lower(), g.dn.lower()))

    def _legacy_targets_for(self, source_name: str) -> List[str]:
        names: List[str] = []
        for legacy_source, legacy_targets in self.config.legacy_pairs.items():
            if legacy_source.lower() == source_name.lower():
                names.extend(t for t in legacy_targets if t not in names)
        return names

    def _lookup(self, name: str) -> Optional[GroupRef]:
        try:
            return self.gateway.get_group(name, self.server)
        except GroupNotFoundError:
            return None
