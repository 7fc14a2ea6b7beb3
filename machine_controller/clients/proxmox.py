import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from machine_controller.clients.http import (
    RequestFailure,
    RetryPolicy,
    request_with_retry,
)


logger = logging.getLogger(__name__)

_NET_DEVICE_KEY = re.compile(r"^net\d+$")


class CloudInitFailedError(RuntimeError):
    pass


class TemplateNotFoundError(RuntimeError):
    pass


class MultipleTemplatesFoundError(RuntimeError):
    pass


class VMResourceNotFoundError(RuntimeError):
    pass


@dataclass
class VirtualMachineOption:
    name: str
    value: Any


@dataclass
class VirtualMachineConfig:
    name: str = ""
    sockets: int = 0
    cores: int = 0
    memory: int = 0
    description: str = ""
    tags: str = ""
    smbios1: str = ""
    nets: dict[str, str] = field(default_factory=dict)
    tags_slice: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "VirtualMachineConfig":
        return cls(
            name=str(data.get("name") or ""),
            sockets=_as_int(data.get("sockets")),
            cores=_as_int(data.get("cores")),
            memory=_as_int(data.get("memory")),
            description=str(data.get("description") or ""),
            tags=str(data.get("tags") or ""),
            smbios1=str(data.get("smbios1") or ""),
            nets={
                key: str(value)
                for key, value in data.items()
                if _NET_DEVICE_KEY.match(key)
            },
        )


@dataclass
class ProxmoxVM:
    node: str
    vmid: int
    name: str
    status: str
    config: VirtualMachineConfig = field(default_factory=VirtualMachineConfig)

    def is_running(self) -> bool:
        return self.status == "running"

    def split_tags(self) -> None:
        self.config.tags_slice = [
            tag.strip() for tag in self.config.tags.split(";") if tag.strip()
        ]

    def has_tag(self, tag: str) -> bool:
        return tag in self.config.tags_slice


@dataclass
class VMCloneRequest:
    node: str
    new_id: int
    name: str
    description: str = ""
    format: str = ""
    full: int | None = None
    pool: str = ""
    snap_name: str = ""
    storage: str = ""
    target: str = ""

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"newid": self.new_id, "name": self.name}
        optional = {
            "description": self.description,
            "format": self.format,
            "pool": self.pool,
            "snapname": self.snap_name,
            "storage": self.storage,
            "target": self.target,
        }
        params.update({key: value for key, value in optional.items() if value})
        if self.full is not None:
            params["full"] = self.full
        return params


@dataclass
class VMCloneResponse:
    new_id: int
    task: str


@dataclass
class ClusterResource:
    vmid: int
    node: str
    name: str
    template: bool
    tags: list[str]
    maxmem: int
    status: str


@dataclass
class TaskStatus:
    upid: str
    status: str
    exit_status: str | None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def is_successful(self) -> bool:
        return self.status == "stopped" and self.exit_status == "OK"

    @property
    def is_failed(self) -> bool:
        return self.status == "stopped" and self.exit_status != "OK"


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def parse_upid_node(upid: str) -> str:
    # UPID:<node>:<pid>:<pstart>:<starttime>:<type>:<id>:<user>:
    parts = upid.split(":")
    if len(parts) < 3 or parts[0] != "UPID" or not parts[1]:
        raise ValueError(f"malformed task id {upid!r}")
    return parts[1]


def parse_upid_type(upid: str) -> str:
    parts = upid.split(":")
    if len(parts) < 7 or parts[0] != "UPID" or not parts[5]:
        raise ValueError(f"malformed task id {upid!r}")
    return parts[5]


class ProxmoxClient:
    def __init__(
        self,
        base_url: str,
        token_id: str,
        token_secret: str,
        retry: RetryPolicy,
        verify_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.retry = retry
        self.client = httpx.Client(
            base_url=f"{self.base_url}/api2/json",
            headers={"Authorization": f"PVEAPIToken={token_id}={token_secret}"},
            verify=verify_tls,
            timeout=timeout,
        )

    def close(self) -> None:
        self.client.close()

    def _data(self, method: str, path: str, **kwargs: Any) -> Any:
        response = request_with_retry(self.client, method, path, self.retry, **kwargs)
        return response.json().get("data")

    @staticmethod
    def _vm_path(vm: ProxmoxVM) -> str:
        return f"/nodes/{vm.node}/qemu/{vm.vmid}"

    def get_vm(self, node: str, vmid: int) -> ProxmoxVM:
        config = self._data("GET", f"/nodes/{node}/qemu/{vmid}/config") or {}
        current = self._data("GET", f"/nodes/{node}/qemu/{vmid}/status/current") or {}
        vm_config = VirtualMachineConfig.from_api(config)
        return ProxmoxVM(
            node=node,
            vmid=vmid,
            name=vm_config.name,
            status=str(current.get("status") or "unknown"),
            config=vm_config,
        )

    def list_vm_resources(self) -> list[ClusterResource]:
        items = self._data("GET", "/cluster/resources", params={"type": "vm"}) or []
        resources: list[ClusterResource] = []
        for item in items:
            if not isinstance(item, dict) or item.get("type") not in (None, "qemu"):
                continue
            raw_tags = str(item.get("tags") or "")
            resources.append(
                ClusterResource(
                    vmid=_as_int(item.get("vmid")),
                    node=str(item.get("node") or ""),
                    name=str(item.get("name") or ""),
                    template=bool(_as_int(item.get("template"))),
                    tags=[tag for tag in raw_tags.split(";") if tag],
                    maxmem=_as_int(item.get("maxmem")),
                    status=str(item.get("status") or ""),
                )
            )
        return resources

    def find_vm_resource(self, vmid: int) -> ClusterResource:
        for resource in self.list_vm_resources():
            if resource.vmid == vmid:
                return resource
        raise VMResourceNotFoundError(f"no virtual machine with id {vmid} in cluster")

    def find_vm_template_by_tags(self, tags: list[str]) -> tuple[str, int]:
        wanted = {tag.lower() for tag in tags}
        matches = [
            resource
            for resource in self.list_vm_resources()
            if resource.template
            and wanted.issubset({tag.lower() for tag in resource.tags})
        ]
        if not matches:
            raise TemplateNotFoundError(
                f"no vm template found with tags {sorted(wanted)}"
            )
        if len(matches) > 1:
            raise MultipleTemplatesFoundError(
                f"found {len(matches)} vm templates with tags {sorted(wanted)}"
            )
        return matches[0].node, matches[0].vmid

    def next_id(self) -> int:
        return int(self._data("GET", "/cluster/nextid"))

    def check_id(self, vmid: int) -> bool:
        try:
            self._data("GET", "/cluster/nextid", params={"vmid": vmid})
        except RequestFailure as exc:
            if exc.status_code == 400 and "already exists" in exc.detail:
                return False
            raise
        return True

    def clone_vm(self, template_id: int, request: VMCloneRequest) -> VMCloneResponse:
        if request.new_id == 0:
            request.new_id = self.next_id()
        upid = self._data(
            "POST",
            f"/nodes/{request.node}/qemu/{template_id}/clone",
            data=request.to_params(),
        )
        logger.info(
            "clone requested template_id=%s new_id=%s node=%s target=%s",
            template_id,
            request.new_id,
            request.node,
            request.target or request.node,
        )
        return VMCloneResponse(new_id=request.new_id, task=str(upid))

    def configure_vm(self, vm: ProxmoxVM, *options: VirtualMachineOption) -> str:
        data = {option.name: option.value for option in options}
        return str(self._data("POST", f"{self._vm_path(vm)}/config", data=data))

    def resize_disk(self, vm: ProxmoxVM, disk: str, size: str) -> None:
        self._data(
            "PUT", f"{self._vm_path(vm)}/resize", data={"disk": disk, "size": size}
        )

    def start_vm(self, vm: ProxmoxVM) -> str:
        return str(self._data("POST", f"{self._vm_path(vm)}/status/start"))

    def qemu_agent_status(self, vm: ProxmoxVM) -> None:
        self._data("POST", f"{self._vm_path(vm)}/agent/ping")

    def cloud_init_status(self, vm: ProxmoxVM) -> bool:
        """Return True while cloud-init is still running inside the guest.

        Raises CloudInitFailedError when cloud-init reports a terminal error.
        """
        started = self._data(
            "POST",
            f"{self._vm_path(vm)}/agent/exec",
            data={"command": ["cloud-init", "status"]},
        )
        pid = started.get("pid") if isinstance(started, dict) else None
        if pid is None:
            raise RuntimeError(f"guest agent returned no pid for vm {vm.vmid}")
        status = self._data(
            "GET", f"{self._vm_path(vm)}/agent/exec-status", params={"pid": pid}
        )
        if not isinstance(status, dict) or not status.get("exited"):
            return True
        output = str(status.get("out-data") or "")
        if "status: running" in output:
            return True
        if "status: error" in output:
            raise CloudInitFailedError(
                f"cloud-init failed on vm {vm.vmid}: {output.strip()}"
            )
        return False

    def unmount_cloud_init_iso(self, vm: ProxmoxVM, device: str) -> None:
        self._data(
            "PUT", f"{self._vm_path(vm)}/config", data={device: "none,media=cdrom"}
        )

    def get_task(self, upid: str) -> TaskStatus:
        node = parse_upid_node(upid)
        data = self._data("GET", f"/nodes/{node}/tasks/{quote(upid, safe='')}/status")
        data = data or {}
        return TaskStatus(
            upid=upid,
            status=str(data.get("status") or ""),
            exit_status=data.get("exitstatus"),
        )

    def node_memory(self, node: str) -> int:
        data = self._data("GET", f"/nodes/{node}/status") or {}
        memory = data.get("memory") or {}
        return _as_int(memory.get("total"))

    def list_storage_isos(self, node: str, storage: str) -> list[str]:
        items = self._data(
            "GET",
            f"/nodes/{node}/storage/{storage}/content",
            params={"content": "iso"},
        )
        return [str(item["volid"]) for item in items or [] if "volid" in item]

    def delete_storage_volume(self, node: str, storage: str, volid: str) -> None:
        self._data(
            "DELETE", f"/nodes/{node}/storage/{storage}/content/{quote(volid, safe='')}"
        )

    def upload_iso(self, node: str, storage: str, filename: str, content: bytes) -> str:
        upid = self._data(
            "POST",
            f"/nodes/{node}/storage/{storage}/upload",
            data={"content": "iso"},
            files={"filename": (filename, content, "application/x-iso9660-image")},
        )
        return str(upid)
