import ipaddress
import logging
from collections.abc import Iterator

from machine_controller import conditions
from machine_controller.schemas import DEFAULT_NETWORK_DEVICE, IPAddresses, IPConfig
from machine_controller.scope import MachineScope
from machine_controller.services.errors import ResourceExhaustedError


logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def iter_pool(config: IPConfig) -> Iterator[IPAddress]:
    """Yield pool addresses in declaration order.

    Entries are single addresses, ``first-last`` ranges or CIDR blocks. A
    block yields its usable hosts only.
    """
    for entry in config.addresses:
        entry = entry.strip()
        if "-" in entry:
            first_raw, _, last_raw = entry.partition("-")
            first = ipaddress.ip_address(first_raw.strip())
            last = ipaddress.ip_address(last_raw.strip())
            if first.version != last.version or last < first:
                raise ValueError(f"invalid address range {entry!r}")
            current = first
            while current <= last:
                yield current
                current += 1
        elif "/" in entry:
            yield from ipaddress.ip_network(entry, strict=False).hosts()
        else:
            yield ipaddress.ip_address(entry)


def _assigned(scope: MachineScope, version: int) -> str | None:
    addresses = scope.proxmox_machine.status.ip_addresses.get(DEFAULT_NETWORK_DEVICE)
    if addresses is None:
        return None
    return addresses.ipv4 if version == 4 else addresses.ipv6


def _addresses_in_use(scope: MachineScope, version: int) -> set[IPAddress]:
    used: set[IPAddress] = set()
    for machine in scope.infra_cluster.list_proxmox_machines_for_cluster():
        if machine.name == scope.name():
            continue
        for addresses in machine.status.ip_addresses.values():
            raw = addresses.ipv4 if version == 4 else addresses.ipv6
            if raw:
                used.add(ipaddress.ip_address(raw))
    return used


def allocate_address(scope: MachineScope, config: IPConfig, version: int) -> str:
    used = _addresses_in_use(scope, version)
    if config.gateway:
        used.add(ipaddress.ip_address(config.gateway))
    for candidate in iter_pool(config):
        if candidate.version != version or candidate in used:
            continue
        return str(candidate)
    raise ResourceExhaustedError(
        f"no free ipv{version} address left in pool {config.addresses}"
    )


def reconcile_ip_addresses(scope: MachineScope) -> bool:
    cluster_spec = scope.infra_cluster.cluster.spec
    families = ((4, cluster_spec.ipv4_config), (6, cluster_spec.ipv6_config))
    wanted = [
        (version, config)
        for version, config in families
        if config is not None and _assigned(scope, version) is None
    ]
    if not wanted:
        return False

    status = scope.proxmox_machine.status
    addresses = status.ip_addresses.setdefault(DEFAULT_NETWORK_DEVICE, IPAddresses())
    for version, config in wanted:
        try:
            address = allocate_address(scope, config, version)
        except ResourceExhaustedError as exc:
            scope.set_failure_message(exc)
            scope.set_failure_reason(conditions.INSUFFICIENT_RESOURCES_FAILURE)
            raise
        if version == 4:
            addresses.ipv4 = address
        else:
            addresses.ipv6 = address
        logger.info(
            "ip address assigned machine=%s device=%s address=%s",
            scope.name(),
            DEFAULT_NETWORK_DEVICE,
            address,
        )

    # Persisted before anything consumes it so siblings see the claim.
    return True
