"""libvirt/QEMU implementation of the guest lifecycle capability."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Optional, Sequence
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from goldimage.constants import LIBVIRT_URI, SUPPORTED_ARCHES, WORK_DIR
from goldimage.driver import GuestDriver
from goldimage.exceptions import DriverError, ProvisioningError
from goldimage.models import Artifact, BuildConfig, GuestInstance, HardwareSpec
from goldimage.utils import ensure_directory, file_sha256, kvm_available, log, run


def _error_message(exc: Exception) -> str:
    message = exc.get_error_message() if hasattr(exc, "get_error_message") else None
    return message or str(exc)


def render_domain_xml(
    name: str,
    hardware: HardwareSpec,
    disk_path: Path,
    media_path: Path,
    kvm: bool,
) -> str:
    """Render a transient-install domain: blank disk first, install media on cdrom."""
    arch_profile = SUPPORTED_ARCHES[hardware.arch]
    domain = Element("domain", type="kvm" if kvm else "qemu")
    SubElement(domain, "name").text = name
    SubElement(domain, "memory", unit="MiB").text = str(hardware.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(hardware.cpus)

    os_attrs = {"firmware": "efi"} if hardware.firmware == "uefi" else {}
    os_el = SubElement(domain, "os", **os_attrs)
    SubElement(os_el, "type", arch=hardware.arch, machine=arch_profile["machine"]).text = "hvm"
    SubElement(os_el, "boot", dev="hd")
    SubElement(os_el, "boot", dev="cdrom")

    features = arch_profile.get("features", ())
    if features:
        features_el = SubElement(domain, "features")
        for feature in features:
            SubElement(features_el, feature)

    if kvm:
        SubElement(domain, "cpu", mode="host-passthrough")

    # the installer reboots into the installed system; keep the domain alive
    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"

    devices = SubElement(domain, "devices")
    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=hardware.disk_format, cache="unsafe", discard="unmap")
    SubElement(disk, "source", file=str(disk_path))
    SubElement(disk, "target", dev="vda", bus="virtio")

    cdrom = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(cdrom, "driver", name="qemu", type="raw")
    SubElement(cdrom, "source", file=str(media_path))
    SubElement(cdrom, "target", dev="sda", bus="sata")
    SubElement(cdrom, "readonly")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=hardware.network)
    SubElement(iface, "model", type="virtio")

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    SubElement(devices, "graphics", type="vnc", port="-1", autoport="yes", listen="127.0.0.1")
    video = SubElement(devices, "video")
    SubElement(video, "model", type="virtio")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return tostring(domain, encoding="unicode")


class LibvirtDriver(GuestDriver):
    def __init__(self, uri: str = LIBVIRT_URI, work_root: Path = WORK_DIR) -> None:
        self.uri = uri
        self.work_root = Path(work_root)
        self.conn: Optional[libvirt.virConnect] = None
        self._networks: Dict[str, str] = {}
        self._uefi: Dict[str, bool] = {}

    def connect(self) -> None:
        if self.conn is not None:
            return
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ProvisioningError(f"Failed to open libvirt connection to {self.uri}: {_error_message(exc)}") from exc
        if self.conn is None:
            raise ProvisioningError(f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def create(self, config: BuildConfig, build_id: str, media_path: Optional[Path] = None) -> GuestInstance:
        self.connect()
        name = f"goldimage-{config.name}-{build_id[:8]}"
        work_dir = self.work_root / name
        ensure_directory(work_dir)
        hardware = config.hardware
        disk_path = work_dir / f"disk.{hardware.disk_format}"
        media = media_path or Path(config.media)

        domain = None
        try:
            log("INFO", f"Creating disk {disk_path} ({hardware.disk_size})")
            run(["qemu-img", "create", "-f", hardware.disk_format, str(disk_path), hardware.disk_size],
                stdout=subprocess.DEVNULL)
            xml = render_domain_xml(name, hardware, disk_path, media, kvm_available())
            domain = self.conn.defineXML(xml)
            if domain is None:
                raise ProvisioningError(f"Failed to define libvirt domain {name}")
            domain.create()
        except (libvirt.libvirtError, subprocess.CalledProcessError, OSError) as exc:
            message = _error_message(exc)
            if domain is not None:
                self._undefine(domain, hardware.firmware == "uefi")
            shutil.rmtree(work_dir, ignore_errors=True)
            raise ProvisioningError(f"Failed to create guest {name}: {message}") from exc
        except ProvisioningError:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        self._networks[name] = hardware.network
        self._uefi[name] = hardware.firmware == "uefi"
        log("SUCCESS", f"Domain {name} started")
        return GuestInstance(
            id=domain.UUIDString(),
            name=name,
            console=domain,
            disk_path=disk_path,
            work_dir=work_dir,
        )

    def send_keys(self, guest: GuestInstance, keycodes: Sequence[int], hold_ms: int = 50) -> None:
        codes = list(keycodes)
        try:
            guest.console.sendKey(libvirt.VIR_KEYCODE_SET_LINUX, hold_ms, codes, len(codes), 0)
        except libvirt.libvirtError as exc:
            raise DriverError(f"sendKey to {guest.name} failed: {_error_message(exc)}") from exc

    def address(self, guest: GuestInstance) -> Optional[str]:
        try:
            ifaces = guest.console.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
        except libvirt.libvirtError:
            return None
        for info in (ifaces or {}).values():
            for addr in info.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                    return addr["addr"]
        return None

    def host_address(self, guest: GuestInstance) -> Optional[str]:
        network_name = self._networks.get(guest.name)
        if not network_name or self.conn is None:
            return None
        try:
            xml = self.conn.networkLookupByName(network_name).XMLDesc(0)
        except libvirt.libvirtError:
            return None
        ip_el = fromstring(xml).find("ip")
        if ip_el is None:
            return None
        return ip_el.get("address")

    def is_running(self, guest: GuestInstance) -> bool:
        try:
            return bool(guest.console.isActive())
        except libvirt.libvirtError:
            return False

    def shutdown(self, guest: GuestInstance) -> None:
        try:
            guest.console.shutdown()
        except libvirt.libvirtError as exc:
            raise DriverError(f"ACPI shutdown of {guest.name} failed: {_error_message(exc)}") from exc

    def power_off(self, guest: GuestInstance) -> None:
        if not self.is_running(guest):
            return
        try:
            guest.console.destroy()
        except libvirt.libvirtError as exc:
            raise DriverError(f"Power-off of {guest.name} failed: {_error_message(exc)}") from exc

    def convert_to_artifact(
        self, guest: GuestInstance, output_dir: Path, artifact_id: str, replace: bool = False
    ) -> Artifact:
        if guest.disk_path is None:
            raise DriverError(f"Guest {guest.name} has no disk to convert")
        ensure_directory(output_dir)
        fmt = guest.disk_path.suffix.lstrip(".") or "qcow2"
        target = output_dir / f"{artifact_id}.{fmt}"
        if target.exists() and not replace:
            raise DriverError(f"Artifact {target} already exists (set replace to overwrite)")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{artifact_id}.", suffix=f".{fmt}", dir=output_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        cmd = ["qemu-img", "convert", "-O", fmt]
        if fmt == "qcow2":
            cmd.append("-c")
        cmd.extend([str(guest.disk_path), str(tmp_path)])
        log("INFO", f"Converting {guest.disk_path} -> {target}")
        try:
            run(cmd, stdout=subprocess.DEVNULL)
            if replace:
                tmp_path.replace(target)
            else:
                # link fails if another build published the same identity meanwhile
                os.link(tmp_path, target)
                tmp_path.unlink()
        except FileExistsError as exc:
            tmp_path.unlink(missing_ok=True)
            raise DriverError(f"Artifact {target} already exists (set replace to overwrite)") from exc
        except (subprocess.CalledProcessError, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise DriverError(f"qemu-img convert failed for {guest.name}: {exc}") from exc

        return Artifact(
            artifact_id=artifact_id,
            files=[target],
            checksum=f"sha256:{file_sha256(target)}",
            format=fmt,
            output_dir=output_dir,
        )

    def destroy(self, guest: GuestInstance) -> None:
        domain = guest.console
        errors = []
        if domain is not None:
            try:
                if domain.isActive():
                    log("INFO", f"Destroying domain {guest.name}")
                    domain.destroy()
            except libvirt.libvirtError as exc:
                errors.append(_error_message(exc))
            errors.extend(self._undefine(domain, self._uefi.get(guest.name, False)))
        if guest.work_dir is not None and guest.work_dir.exists():
            try:
                shutil.rmtree(guest.work_dir)
            except OSError as exc:
                errors.append(f"could not remove {guest.work_dir}: {exc}")
        self._networks.pop(guest.name, None)
        self._uefi.pop(guest.name, None)
        if errors:
            raise DriverError(f"Cleanup of {guest.name} incomplete: {'; '.join(errors)}")

    @staticmethod
    def _undefine(domain, uefi: bool) -> list:
        try:
            # NVRAM domains (UEFI) need the NVRAM flag to undefine
            if uefi:
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            else:
                domain.undefine()
        except libvirt.libvirtError as exc:
            return [_error_message(exc)]
        return []
