"""
Typed include/exclude filters and ordering for appliance lists.

Filters come from ``--include``/``--exclude`` flags of the form
``key=value``. Several values for one key are joined with ``&`` and must all
match. Values are regular expressions, compiled when the filter is parsed.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from sdpctl.errors import InvalidFilterError
from sdpctl.models import Appliance, ApplianceStatus

FILTER_DELIMITER = "&"


class FilterKey(Enum):
    NAME = "name"
    ID = "id"
    HOSTNAME = "hostname"
    TAG = "tag"
    FUNCTION = "function"
    ACTIVATED = "activated"
    SITE = "site"
    VERSION = "version"
    STATUS = "status"
    STATE = "state"


_KEY_ALIASES = {
    "host": FilterKey.HOSTNAME,
    "tags": FilterKey.TAG,
    "active": FilterKey.ACTIVATED,
    "site-id": FilterKey.SITE,
}

ORDER_KEYS = ("name", "id", "site-id", "site-name", "site", "hostname", "host", "activated", "active")


def _parse_key(raw: str) -> FilterKey:
    key = raw.strip().lower()
    if key in _KEY_ALIASES:
        return _KEY_ALIASES[key]
    try:
        return FilterKey(key)
    except ValueError:
        raise InvalidFilterError(f"'{raw}' is not a filterable keyword") from None


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("true", "1", "t", "yes"):
        return True
    if value in ("false", "0", "f", "no"):
        return False
    raise InvalidFilterError(f"invalid boolean '{raw}' for activated")


@dataclass
class FilterRule:
    """All patterns for one key. Every pattern must match."""

    key: FilterKey
    patterns: List[Pattern] = field(default_factory=list)
    flag: Optional[bool] = None

    def matches(self, appliance: Appliance, status: Optional[ApplianceStatus]) -> bool:
        if self.key is FilterKey.ACTIVATED:
            return appliance.activated == self.flag
        values = _field_values(self.key, appliance, status)
        return all(any(p.search(v) for v in values) for p in self.patterns)


def _field_values(
    key: FilterKey, appliance: Appliance, status: Optional[ApplianceStatus]
) -> List[str]:
    if key is FilterKey.NAME:
        return [appliance.name]
    if key is FilterKey.ID:
        return [appliance.id]
    if key is FilterKey.HOSTNAME:
        return [
            h
            for h in (appliance.hostname, appliance.admin_hostname, appliance.peer_hostname)
            if h
        ]
    if key is FilterKey.TAG:
        return list(appliance.tags)
    if key is FilterKey.FUNCTION:
        return [fn.value.lower() for fn in appliance.enabled_functions()]
    if key is FilterKey.SITE:
        return [v for v in (appliance.site, appliance.site_name) if v]
    if key is FilterKey.VERSION:
        if status is not None and status.version:
            return [status.version]
        return [str(appliance.peer_version)]
    if key is FilterKey.STATUS:
        return [status.status.value] if status is not None else []
    if key is FilterKey.STATE:
        return [status.raw_state] if status is not None else []
    return []


def _compile_rules(entries: Iterable[str]) -> List[FilterRule]:
    rules: Dict[FilterKey, FilterRule] = {}
    for entry in entries or []:
        if "=" not in entry:
            raise InvalidFilterError(f"filter '{entry}' must be of the form key=value")
        raw_key, raw_value = entry.split("=", 1)
        key = _parse_key(raw_key)
        rule = rules.setdefault(key, FilterRule(key=key))
        if key is FilterKey.ACTIVATED:
            rule.flag = _parse_bool(raw_value)
            continue
        for value in raw_value.split(FILTER_DELIMITER):
            if not value:
                continue
            flags = re.IGNORECASE if key is FilterKey.FUNCTION else 0
            try:
                rule.patterns.append(re.compile(value, flags))
            except re.error as e:
                raise InvalidFilterError(
                    f"invalid regular expression '{value}' for {key.value}: {e}"
                ) from e
    return list(rules.values())


class ApplianceFilter:
    """
    Compiled include/exclude filter.

    An appliance is kept when it matches every include rule and no exclude
    rule. With no include rules every appliance is included.
    """

    def __init__(self, include: List[FilterRule], exclude: List[FilterRule]):
        self.include = include
        self.exclude = exclude

    @classmethod
    def parse(
        cls,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> "ApplianceFilter":
        """
        Compile filter flags.

        Raises:
            InvalidFilterError: For unknown keys or bad regular expressions
        """
        return cls(_compile_rules(include or []), _compile_rules(exclude or []))

    @property
    def is_empty(self) -> bool:
        return not self.include and not self.exclude

    @property
    def needs_stats(self) -> bool:
        keys = {r.key for r in self.include + self.exclude}
        return bool(keys & {FilterKey.VERSION, FilterKey.STATUS, FilterKey.STATE})

    def matches(
        self, appliance: Appliance, status: Optional[ApplianceStatus] = None
    ) -> bool:
        if not all(r.matches(appliance, status) for r in self.include):
            return False
        if not self.exclude:
            return True
        # Exclude rules are OR'ed: any one of them drops the appliance.
        return not any(r.matches(appliance, status) for r in self.exclude)

    def apply(
        self,
        appliances: List[Appliance],
        statuses: Optional[Dict[str, ApplianceStatus]] = None,
    ) -> Tuple[List[Appliance], List[Appliance]]:
        """Split appliances into (included, filtered out), preserving order."""
        statuses = statuses or {}
        included, filtered = [], []
        for a in appliances:
            if self.matches(a, statuses.get(a.id)):
                included.append(a)
            else:
                filtered.append(a)
        return included, filtered


def order_appliances(
    appliances: List[Appliance], order_by: Optional[List[str]] = None, descending: bool = False
) -> List[Appliance]:
    """
    Stable sort by one or more keys. The first key has the highest priority.

    Raises:
        InvalidFilterError: For a key that cannot be sorted on
    """
    result = list(appliances)
    keys = order_by or ["name"]
    for key in reversed(keys):
        k = key.lower()
        if k == "name":
            result.sort(key=lambda a: a.name)
        elif k == "id":
            result.sort(key=lambda a: a.id)
        elif k == "site-id":
            result.sort(key=lambda a: a.site)
        elif k in ("site-name", "site"):
            result.sort(key=lambda a: a.site_name)
        elif k in ("hostname", "host"):
            result.sort(key=lambda a: a.hostname)
        elif k in ("activated", "active"):
            result.sort(key=lambda a: not a.activated)
        else:
            raise InvalidFilterError(f"keyword not sortable: {key}")
    if descending:
        result.reverse()
    return result
