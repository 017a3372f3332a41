"""
auth/ip_whitelist.py -- Network allow-list for /api/admin/* routes.

Entries in ADMIN_IPS may be single addresses ("203.0.113.45", "2001:db8::1")
or CIDR networks ("10.0.0.0/8"). Matching uses the stdlib ipaddress module so
"::ffff:10.0.0.5" and "10.0.0.5" compare equal.

Empty list:
  allow_all_when_empty=False (production)  -> every address is denied
  allow_all_when_empty=True  (development) -> every address is allowed
Settings refuses the second combination unless DEBUG is on.
"""

from __future__ import annotations

import ipaddress
import logging

from core.http import normalize_ip

logger = logging.getLogger("alwr.auth.ip_whitelist")


class IpWhitelist:
    def __init__(self, entries: list[str], allow_all_when_empty: bool = False) -> None:
        self.allow_all_when_empty = allow_all_when_empty
        self._networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for entry in entries:
            try:
                self._networks.append(ipaddress.ip_network(normalize_ip(entry), strict=False))
            except ValueError:
                logger.error("Ignoring invalid ADMIN_IPS entry: %r", entry)
        if not self._networks:
            if allow_all_when_empty:
                logger.warning("ADMIN_IPS is empty -- admin routes are open to every address (development mode)")
            else:
                logger.warning("ADMIN_IPS is empty -- admin routes will reject every request")

    @classmethod
    def from_settings(cls, settings) -> "IpWhitelist":
        return cls(settings.admin_ip_list, allow_all_when_empty=settings.admin_ip_allow_all_when_empty)

    def __len__(self) -> int:
        return len(self._networks)

    def is_allowed(self, client_ip: str) -> bool:
        if not self._networks:
            return self.allow_all_when_empty
        try:
            address = ipaddress.ip_address(normalize_ip(client_ip))
        except ValueError:
            return False
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        return any(address in network for network in self._networks)
