"""NoCloud bootstrap medium for cloned VMs.

The owner's bootstrap data becomes ``user-data`` on a ``cidata`` ISO that is
uploaded to the node's ISO storage and attached as a cdrom. Upload and attach
happen on separate passes, each behind its own Proxmox task.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path

from machine_controller import conditions
from machine_controller.clients.proxmox import VirtualMachineOption
from machine_controller.config import get_settings
from machine_controller.schemas import DEFAULT_NETWORK_DEVICE, ConditionSeverity
from machine_controller.scope import MachineScope
from machine_controller.services.errors import ReconcileError


logger = logging.getLogger(__name__)


def render_meta_data(scope: MachineScope) -> str:
    provider_id = scope.proxmox_machine.spec.provider_id or ""
    instance_id = provider_id.removeprefix("proxmox://") or scope.name()
    return f"instance-id: {instance_id}\nlocal-hostname: {scope.name()}\n"


def render_network_config(scope: MachineScope) -> str:
    cluster_spec = scope.infra_cluster.cluster.spec
    assigned = scope.proxmox_machine.status.ip_addresses.get(DEFAULT_NETWORK_DEVICE)

    lines = [
        "version: 2",
        "ethernets:",
        "  default:",
        "    match:",
        "      name: \"e*\"",
        "    dhcp4: false",
        "    dhcp6: false",
        "    addresses:",
    ]
    routes: list[tuple[str, str]] = []
    families = (
        (cluster_spec.ipv4_config, assigned.ipv4 if assigned else None, "0.0.0.0/0"),
        (cluster_spec.ipv6_config, assigned.ipv6 if assigned else None, "::/0"),
    )
    for config, address, default_route in families:
        if config is None or not address:
            continue
        lines.append(f"      - {address}/{config.prefix}")
        if config.gateway:
            routes.append((default_route, config.gateway))

    if routes:
        lines.append("    routes:")
        for to, via in routes:
            lines.append(f"      - to: {to}")
            lines.append(f"        via: {via}")
    if cluster_spec.dns_servers:
        lines.append("    nameservers:")
        lines.append("      addresses:")
        for server in cluster_spec.dns_servers:
            lines.append(f"        - {server}")
    return "\n".join(lines) + "\n"


def iso_file_name(scope: MachineScope) -> str:
    return f"{scope.name()}-{scope.get_virtual_machine_id()}-cidata.iso"


def build_cidata_iso(user_data: str, meta_data: str, network_config: str) -> bytes:
    mkisofs = shutil_which_first(["xorriso", "genisoimage", "mkisofs"])
    if not mkisofs:
        raise ReconcileError("no iso tool found: install xorriso, genisoimage or mkisofs")

    with tempfile.TemporaryDirectory(prefix="cidata-") as workdir:
        work = Path(workdir)
        sources = []
        for name, content in (
            ("user-data", user_data),
            ("meta-data", meta_data),
            ("network-config", network_config),
        ):
            path = work / name
            path.write_text(content, encoding="utf-8")
            sources.append(str(path))

        iso_path = work / "cidata.iso"
        cmd = [mkisofs]
        if "xorriso" in mkisofs:
            cmd += ["-as", "mkisofs"]
        cmd += ["-output", str(iso_path), "-volid", "cidata", "-joliet", "-rock"]
        cmd += sources
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            stdout = (exc.stdout or "").strip()
            raise ReconcileError(
                f"cloud-init iso generation failed with {mkisofs}: {stderr or stdout or exc}"
            ) from exc
        return iso_path.read_bytes()


def shutil_which_first(candidates: list[str]) -> str | None:
    for name in candidates:
        for directory in os.environ.get("PATH", "").split(os.pathsep):
            path = Path(directory) / name
            if path.exists() and os.access(path, os.X_OK):
                return str(path)
    return None


def _upload_iso(scope: MachineScope) -> bool:
    settings = get_settings()
    vm = scope.virtual_machine
    storage = settings.iso_storage
    file_name = iso_file_name(scope)
    volid = f"{storage}:iso/{file_name}"

    iso = build_cidata_iso(
        scope.machine.bootstrap_data or "",
        render_meta_data(scope),
        render_network_config(scope),
    )

    # Left over from an attempt whose upload task failed.
    if volid in scope.client.list_storage_isos(vm.node, storage):
        scope.client.delete_storage_volume(vm.node, storage, volid)

    task = scope.client.upload_iso(vm.node, storage, file_name, iso)
    machine = scope.proxmox_machine
    machine.status.task_ref = task
    machine.status.bootstrap_iso = volid
    logger.info(
        "bootstrap iso uploading machine=%s node=%s volid=%s task=%s",
        scope.name(),
        vm.node,
        volid,
        task,
    )
    return True


def _attach_iso(scope: MachineScope) -> bool:
    settings = get_settings()
    machine = scope.proxmox_machine
    option = VirtualMachineOption(
        settings.cloud_init_iso_device, f"{machine.status.bootstrap_iso},media=cdrom"
    )
    task = scope.client.configure_vm(scope.virtual_machine, option)
    machine.status.task_ref = task
    machine.status.bootstrap_data_provided = True
    logger.info(
        "bootstrap iso attached machine=%s device=%s task=%s",
        scope.name(),
        settings.cloud_init_iso_device,
        task,
    )
    return True


def reconcile_bootstrap_data(scope: MachineScope) -> bool:
    machine = scope.proxmox_machine
    if machine.status.bootstrap_data_provided:
        return False

    if not scope.machine.bootstrap_data:
        logger.info("waiting for bootstrap data machine=%s", scope.name())
        conditions.mark_false(
            machine,
            conditions.VM_PROVISIONED_CONDITION,
            conditions.WAITING_FOR_BOOTSTRAP_DATA_REASON,
            ConditionSeverity.INFO,
        )
        return True

    if scope.virtual_machine is None:
        raise ReconcileError(f"vm {scope.name()} is not attached to the scope")

    try:
        if machine.status.bootstrap_iso is None:
            return _upload_iso(scope)
        return _attach_iso(scope)
    except ReconcileError:
        raise
    except Exception as exc:
        raise ReconcileError(
            f"failed to provide bootstrap data to vm {scope.name()}"
        ) from exc
