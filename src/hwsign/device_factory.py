"""
Device discovery — finds signers and wraps each in a DeviceHandle.

Discovery enumerates the HID, serial and network sources concurrently,
filters candidates by vendor, opens each one and runs the adapter's
identify handshake.  Nothing that changes device state is sent.

The adapter for a device kind comes from the closed ``ADAPTERS`` table;
handles are kept per device key by ``DeviceRegistry`` so a rescan can
release the old ones before reopening the same paths.

Usage::

    from hwsign.device_factory import DeviceRegistry

    async with DeviceRegistry(DiscoveryConfig.from_env()) as registry:
        for handle in await registry.scan():
            print(handle.kind.display_name, handle.identity.fingerprint_hex)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from .capabilities import DeviceKind
from .config import DiscoveryConfig
from .constants import (
    COLDCARD_PID,
    COLDCARD_VID,
    JADE_SERIAL_IDS,
    LEDGER_MODELS,
    LEDGER_USAGE_PAGE,
    LEDGER_VID,
    SPECTER_SERIAL_IDS,
)
from .device_base import HardwareSigner
from .device_coldcard import ColdcardSigner
from .device_jade import JadeSigner, JadeSimulatorSigner, PinServer
from .device_ledger import LedgerSigner, LedgerSimulatorSigner
from .device_specter import SpecterSigner
from .errors import HWIError
from .handle import DeviceHandle
from .keystore import Keystore
from .transport import (
    HIDAPI_AVAILABLE,
    PYSERIAL_AVAILABLE,
    PYUSB_AVAILABLE,
    HidTransport,
    NetworkTransport,
    PyUsbHidTransport,
    SerialTransport,
    Transport,
)

if HIDAPI_AVAILABLE:
    import hid
if PYUSB_AVAILABLE:
    import usb.core
if PYSERIAL_AVAILABLE:
    import serial.tools.list_ports

log = logging.getLogger(__name__)


# Device kind → adapter class
ADAPTERS: Dict[DeviceKind, Type[HardwareSigner]] = {
    DeviceKind.LEDGER: LedgerSigner,
    DeviceKind.LEDGER_SIMULATOR: LedgerSimulatorSigner,
    DeviceKind.COLDCARD: ColdcardSigner,
    DeviceKind.JADE: JadeSigner,
    DeviceKind.JADE_SIMULATOR: JadeSimulatorSigner,
    DeviceKind.SPECTER: SpecterSigner,
}

# Endpoint vendor tag → simulator kind
_NETWORK_KINDS = {
    "ledger": DeviceKind.LEDGER_SIMULATOR,
    "jade": DeviceKind.JADE_SIMULATOR,
}


# =========================================================================
# Candidates
# =========================================================================

@dataclass
class DeviceCandidate:
    """A device seen during enumeration, not yet opened.

    ``location`` is what the transport needs to open it: a hidapi path,
    a ``(vid, pid, bus, address)`` tuple for pyusb, a serial port name
    or a ``(host, port)`` pair.
    """

    kind: DeviceKind
    path: str
    location: Any = None
    vid: int = 0
    pid: int = 0
    model: str = ""
    serial: str = ""

    @property
    def vendor(self) -> str:
        return self.kind.vendor

    @property
    def key(self) -> str:
        return f"{self.kind.vendor}_{self.vid:04x}_{self.pid:04x}_{self.path}"


def _hid_kind(vid: int, pid: int, usage_page: int = 0, interface: int = -1) -> Optional[DeviceKind]:
    if vid == LEDGER_VID and (usage_page == LEDGER_USAGE_PAGE or interface == 0):
        return DeviceKind.LEDGER
    if vid == COLDCARD_VID and pid == COLDCARD_PID:
        return DeviceKind.COLDCARD
    return None


def _model_name(kind: DeviceKind, pid: int) -> str:
    if kind is DeviceKind.LEDGER:
        return f"Ledger {LEDGER_MODELS.get(pid >> 8, 'device')}"
    return kind.display_name


def enumerate_hid() -> List[DeviceCandidate]:
    """HID signers, via hidapi or, failing that, pyusb."""
    found: Dict[str, DeviceCandidate] = {}
    if HIDAPI_AVAILABLE:
        for info in hid.enumerate():
            vid, pid = info.get("vendor_id", 0), info.get("product_id", 0)
            kind = _hid_kind(vid, pid, info.get("usage_page", 0), info.get("interface_number", -1))
            if kind is None:
                continue
            raw_path = info["path"]
            path = raw_path.decode("utf-8", "replace") if isinstance(raw_path, bytes) else str(raw_path)
            found.setdefault(path, DeviceCandidate(
                kind, path, raw_path, vid, pid, _model_name(kind, pid),
                info.get("serial_number") or ""))
    elif PYUSB_AVAILABLE:
        for dev in usb.core.find(find_all=True):
            kind = _hid_kind(dev.idVendor, dev.idProduct, interface=0)
            if kind is None:
                continue
            location = (dev.idVendor, dev.idProduct, dev.bus, dev.address)
            path = "usb:{:04x}:{:04x}:{}:{}".format(*location)
            found.setdefault(path, DeviceCandidate(
                kind, path, location, dev.idVendor, dev.idProduct,
                _model_name(kind, dev.idProduct)))
    else:
        log.warning("No USB HID backend installed (pip install hidapi or pyusb)")
    return list(found.values())


def enumerate_serial() -> List[DeviceCandidate]:
    """Serial signers recognised by their USB bridge IDs."""
    if not PYSERIAL_AVAILABLE:
        log.warning("pyserial not installed, skipping serial devices")
        return []
    found = []
    for port in serial.tools.list_ports.comports():
        ids = (port.vid, port.pid)
        if ids in SPECTER_SERIAL_IDS:
            kind = DeviceKind.SPECTER
        elif ids in JADE_SERIAL_IDS:
            kind = DeviceKind.JADE
        else:
            continue
        found.append(DeviceCandidate(kind, port.device, port.device, port.vid, port.pid,
                                     kind.display_name, port.serial_number or ""))
    return found


def enumerate_network(config: DiscoveryConfig) -> List[DeviceCandidate]:
    found = []
    for endpoint in config.endpoints:
        kind = _NETWORK_KINDS.get(endpoint.vendor)
        if kind is None:
            log.warning("No simulator adapter for vendor %r at %s:%d",
                        endpoint.vendor, endpoint.host, endpoint.port)
            continue
        found.append(DeviceCandidate(kind, f"tcp:{endpoint.host}:{endpoint.port}",
                                     (endpoint.host, endpoint.port), model=kind.display_name))
    return found


def get_backend_availability() -> Dict[str, bool]:
    """Which optional I/O libraries are importable."""
    return {
        "hidapi": HIDAPI_AVAILABLE,
        "pyusb": PYUSB_AVAILABLE,
        "pyserial": PYSERIAL_AVAILABLE,
    }


# =========================================================================
# Discovery
# =========================================================================

class Discovery:
    """Enumerate, filter, open and identify connected signers."""

    def __init__(self, config: Optional[DiscoveryConfig] = None,
                 keystore: Optional[Keystore] = None,
                 pin_server: Optional[PinServer] = None):
        self.config = config or DiscoveryConfig()
        self.keystore = keystore
        self.pin_server = pin_server
        self._opened: Dict[str, DeviceHandle] = {}

    async def enumerate(self) -> List[DeviceCandidate]:
        """All candidates from the enabled sources, vendor filter applied."""
        loop = asyncio.get_running_loop()
        sources = []
        if self.config.enable_hid:
            sources.append(loop.run_in_executor(None, enumerate_hid))
        if self.config.enable_serial:
            sources.append(loop.run_in_executor(None, enumerate_serial))
        if self.config.enable_network:
            sources.append(loop.run_in_executor(None, enumerate_network, self.config))

        candidates: List[DeviceCandidate] = []
        for result in await asyncio.gather(*sources):
            candidates.extend(c for c in result if self.config.vendor_allowed(c.vendor))
        log.debug("Enumerated %d candidate(s)", len(candidates))
        return candidates

    def create_transport(self, candidate: DeviceCandidate) -> Transport:
        interval = self.config.poll_interval
        if candidate.kind in (DeviceKind.LEDGER_SIMULATOR, DeviceKind.JADE_SIMULATOR):
            host, port = candidate.location
            return NetworkTransport(host, port, poll_interval=interval)
        if candidate.kind in (DeviceKind.JADE, DeviceKind.SPECTER):
            return SerialTransport(candidate.location, poll_interval=interval)
        if isinstance(candidate.location, tuple):
            vid, pid, bus, address = candidate.location
            return PyUsbHidTransport(vid, pid, bus, address, poll_interval=interval)
        return HidTransport(candidate.location, poll_interval=interval)

    def create_adapter(self, candidate: DeviceCandidate, transport: Transport) -> HardwareSigner:
        adapter_class = ADAPTERS[candidate.kind]
        return adapter_class.create(transport, self.config, keystore=self.keystore,
                                    pin_server=self.pin_server)

    async def open_candidate(self, candidate: DeviceCandidate) -> Optional[DeviceHandle]:
        """Open *candidate* and identify it; None if it does not answer.

        The transport stays open and is owned by the returned handle.  A
        candidate this discovery already holds an open handle for gets
        that handle back, since its path is still claimed.
        """
        known = self._opened.get(candidate.key)
        if known is not None and not known.closed:
            log.debug("Reusing open handle for %s", candidate.path)
            return known

        transport = self.create_transport(candidate)
        try:
            await transport.open()
            adapter = self.create_adapter(candidate, transport)
            identity = await asyncio.wait_for(adapter.identify(), self.config.scan_timeout)
        except (HWIError, asyncio.TimeoutError) as exc:
            transport.close()
            log.info("Skipping %s at %s: %s", candidate.kind.display_name, candidate.path,
                     str(exc) or "no answer")
            return None
        except Exception:
            transport.close()
            log.exception("Skipping %s at %s after an unexpected error",
                          candidate.kind.display_name, candidate.path)
            return None
        except BaseException:
            transport.close()
            raise

        identity.path = identity.path or candidate.path
        identity.model = candidate.model or identity.model
        identity.serial = identity.serial or candidate.serial
        log.info("Found %s at %s (fingerprint %s, version %s)", identity.model, identity.path,
                 identity.fingerprint_hex or "locked", identity.version)
        handle = DeviceHandle(adapter, identity, self.config, key=candidate.key)
        self._opened[candidate.key] = handle
        return handle

    async def scan(self) -> List[DeviceHandle]:
        """Identify every reachable device, sorted by kind then path."""
        candidates = await self.enumerate()
        results = await asyncio.gather(*(self.open_candidate(c) for c in candidates))
        present = {c.key for c in candidates}
        for key, handle in list(self._opened.items()):
            if handle.closed:
                del self._opened[key]
            elif key not in present and not handle.busy:
                log.info("%s is gone, closing its handle", handle.describe())
                await handle.aclose()
                del self._opened[key]
        handles = [h for h in results if h is not None]
        handles.sort(key=lambda h: (h.kind.value, h.path))
        return handles


# =========================================================================
# Registry
# =========================================================================

class DeviceRegistry:
    """Owns the handles from the latest scan.

    Concurrent ``scan()`` calls share one in-flight discovery.  The lock
    only guards bookkeeping; device I/O happens outside it.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None,
                 keystore: Optional[Keystore] = None,
                 pin_server: Optional[PinServer] = None,
                 discovery: Optional[Discovery] = None):
        self.discovery = discovery or Discovery(config, keystore, pin_server)
        self._lock = asyncio.Lock()
        self._handles: Dict[str, DeviceHandle] = {}
        self._scan: Optional[asyncio.Future] = None

    async def scan(self) -> List[DeviceHandle]:
        """Close the previous scan's idle handles and rediscover.

        A handle still running an operation stays open and comes back
        from the new scan unchanged.
        """
        async with self._lock:
            if self._scan is None or self._scan.done():
                self._scan = asyncio.ensure_future(self._rescan())
            scan = self._scan
        return list(await asyncio.shield(scan))

    async def _rescan(self) -> List[DeviceHandle]:
        async with self._lock:
            old = list(self._handles.values())
            self._handles.clear()
        for handle in old:
            if handle.busy:
                log.info("Keeping %s open until its operation finishes", handle.describe())
                continue
            await handle.aclose()

        handles = await self.discovery.scan()
        async with self._lock:
            for handle in handles:
                self._handles[handle.key] = handle
        return handles

    @property
    def handles(self) -> List[DeviceHandle]:
        return sorted(self._handles.values(), key=lambda h: (h.kind.value, h.path))

    def get(self, key: str) -> Optional[DeviceHandle]:
        return self._handles.get(key)

    def by_fingerprint(self, fingerprint: bytes) -> List[DeviceHandle]:
        return [h for h in self.handles if h.fingerprint == fingerprint]

    def remove(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.close()

    def close_all(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        if self._scan is not None and not self._scan.done():
            self._scan.cancel()
        self.close_all()
