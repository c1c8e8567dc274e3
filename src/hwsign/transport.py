"""
Byte transports for hardware signers.

The ``Transport`` ABC abstracts the raw I/O so that:
  • Tests can inject a scripted transport (no real hardware needed).
  • ``HidTransport`` provides fixed 64-byte reports via hidapi.
  • ``PyUsbHidTransport`` provides the same over interrupt endpoints
    via pyusb, for systems where hidapi is unavailable.
  • ``SerialTransport`` provides a byte stream via pyserial.
  • ``NetworkTransport`` provides a byte stream over TCP (simulators).

Transports move bytes only.  Splitting messages into reports or
delimiting them in a stream is the protocol adapter's job.

A transport is owned by exactly one handle: opening a path that is
already open elsewhere in the process fails.

Linux dependencies:
  • hidapi:   ``pip install hidapi``  (needs libhidapi / libusb)
  • pyusb:    ``pip install pyusb``   (needs libusb1: ``apt install libusb-1.0-0``)
  • pyserial: ``pip install pyserial``
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Optional, Set

from .constants import (
    DEFAULT_DRAIN_QUIET,
    DEFAULT_POLL_INTERVAL,
    HID_REPORT_SIZE,
    NETWORK_READ_SIZE,
    SERIAL_BAUDRATE,
)
from .errors import DeviceNotFound, Disconnected

# Optional backends
try:
    import hid
    HIDAPI_AVAILABLE = True
except ImportError:
    HIDAPI_AVAILABLE = False

try:
    import usb.core
    import usb.util
    PYUSB_AVAILABLE = True
except ImportError:
    PYUSB_AVAILABLE = False

try:
    import serial
    import serial.tools.list_ports
    PYSERIAL_AVAILABLE = True
except ImportError:
    PYSERIAL_AVAILABLE = False

log = logging.getLogger(__name__)

USB_CLASS_HID = 3


# =========================================================================
# Abstract transport
# =========================================================================

class Transport(ABC):
    """Abstract byte transport, mockable for testing."""

    # Fixed report size for packet transports, None for byte streams
    frame_size: ClassVar[Optional[int]] = None

    _claimed: ClassVar[Set[str]] = set()

    def __init__(self, path: str, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self._path = path
        self.poll_interval = poll_interval
        self._owned = False

    @property
    def path(self) -> str:
        return self._path

    @staticmethod
    async def _blocking(func, *args):
        """Run a blocking driver call on the default executor."""
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the device is currently open."""

    @abstractmethod
    async def _open(self) -> None:
        """Backend specific open."""

    @abstractmethod
    def _close(self) -> None:
        """Backend specific close."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write one report (packet transports) or a run of bytes (streams)."""

    @abstractmethod
    async def _read_available(self) -> bytes:
        """Return whatever is ready without waiting; b'' when idle."""

    async def open(self) -> None:
        """Open the device and take exclusive ownership of its path.

        Raises:
            DeviceNotFound: Path already owned, or the device is gone.
        """
        if self.is_open:
            return
        if self._path in Transport._claimed:
            raise DeviceNotFound(f"{self._path} is already open by another handle")
        Transport._claimed.add(self._path)
        self._owned = True
        try:
            await self._open()
        except BaseException:
            self._release()
            raise
        log.info("Opened %s", self)

    def close(self) -> None:
        """Release the device.  Safe to call more than once."""
        if self.is_open:
            try:
                self._close()
            finally:
                log.info("Closed %s", self)
        self._release()

    def _release(self) -> None:
        if self._owned:
            Transport._claimed.discard(self._path)
            self._owned = False

    async def receive(self) -> bytes:
        """Wait for the next report or chunk of bytes.

        Polls every ``poll_interval`` so a cancelled waiter is released
        within one interval.
        """
        while True:
            data = await self._read_available()
            if data:
                return data
            await asyncio.sleep(self.poll_interval)

    async def drain(self, quiet: float = DEFAULT_DRAIN_QUIET) -> int:
        """Discard input until nothing arrives for *quiet* seconds.

        Returns:
            Number of bytes discarded.
        """
        loop = asyncio.get_running_loop()
        discarded = 0
        last_seen = loop.time()
        while True:
            data = await self._read_available()
            if data:
                discarded += len(data)
                last_seen = loop.time()
                continue
            if loop.time() - last_seen >= quiet:
                break
            await asyncio.sleep(self.poll_interval)
        if discarded:
            log.warning("Drained %d stale byte(s) from %s", discarded, self)
        return discarded

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc):
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(path={self._path!r})"


# =========================================================================
# Buffered reads for stream framing
# =========================================================================

class FrameBuffer:
    """Accumulates transport input for adapters that frame a byte stream."""

    def __init__(self, transport: Transport):
        self._transport = transport
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def peek(self) -> bytes:
        return bytes(self._buf)

    def consume(self, n: int) -> bytes:
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def clear(self) -> None:
        self._buf.clear()

    async def fill(self) -> None:
        self._buf.extend(await self._transport.receive())

    async def read_exactly(self, n: int) -> bytes:
        while len(self._buf) < n:
            await self.fill()
        return self.consume(n)

    async def read_line(self, terminator: bytes = b"\n") -> bytes:
        """Read through *terminator*; the terminator is stripped."""
        while True:
            index = self._buf.find(terminator)
            if index >= 0:
                line = self.consume(index + len(terminator))
                return line[:-len(terminator)]
            await self.fill()


# =========================================================================
# Real transport: HIDAPI
# =========================================================================

class HidTransport(Transport):
    """HID transport using hidapi.

    Reports are exactly 64 bytes; hidapi expects a leading report ID
    (0x00 for devices without numbered reports) on write.

    Requires: ``pip install hidapi``
    """

    frame_size = HID_REPORT_SIZE

    def __init__(self, hid_path: bytes, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if not HIDAPI_AVAILABLE:
            raise ImportError(
                "hidapi is not installed. Install with: pip install hidapi\n"
                "Also need libhidapi: apt install libhidapi-hidraw0 (Debian/Ubuntu) "
                "or dnf install hidapi (Fedora)"
            )
        path = hid_path.decode("utf-8", "replace") if isinstance(hid_path, bytes) else str(hid_path)
        super().__init__(path, poll_interval)
        self._hid_path = hid_path
        self._device = None

    async def _open(self) -> None:
        device = hid.device()
        try:
            device.open_path(self._hid_path)
        except (OSError, IOError) as exc:
            raise DeviceNotFound(f"Cannot open HID device {self._path}: {exc}") from exc
        device.set_nonblocking(1)
        self._device = device

    def _close(self) -> None:
        self._device.close()
        self._device = None

    @property
    def is_open(self) -> bool:
        return self._device is not None

    async def send(self, data: bytes) -> None:
        if self._device is None:
            raise Disconnected("Transport not open")
        if len(data) > self.frame_size:
            raise ValueError(f"HID report larger than {self.frame_size} bytes")
        report = bytes([0x00]) + data.ljust(self.frame_size, b"\x00")
        try:
            written = await self._blocking(self._device.write, report)
        except (OSError, IOError) as exc:
            raise Disconnected(f"HID write failed: {exc}") from exc
        if written < 0:
            raise Disconnected("HID write failed, device unplugged?")

    async def _read_available(self) -> bytes:
        if self._device is None:
            raise Disconnected("Transport not open")
        try:
            data = self._device.read(self.frame_size)
        except (OSError, IOError) as exc:
            raise Disconnected(f"HID read failed: {exc}") from exc
        return bytes(data) if data else b""


# =========================================================================
# Real transport: pyusb (interrupt endpoints)
# =========================================================================

class PyUsbHidTransport(Transport):
    """HID class device driven through pyusb interrupt endpoints.

    Follows the libusb sequence:
    1. Find device by VID/PID (and bus/address)
    2. Detach kernel driver from the HID interface
    3. SetConfiguration, ClaimInterface
    4. Interrupt read/write of 64-byte reports

    Requires: ``pip install pyusb`` + ``apt install libusb-1.0-0``
    """

    frame_size = HID_REPORT_SIZE

    def __init__(self, vid: int, pid: int, bus: Optional[int] = None,
                 address: Optional[int] = None, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if not PYUSB_AVAILABLE:
            raise ImportError(
                "pyusb is not installed. Install with: pip install pyusb\n"
                "Also need libusb: apt install libusb-1.0-0 (Debian/Ubuntu) "
                "or dnf install libusb1 (Fedora)"
            )
        super().__init__(f"usb:{vid:04x}:{pid:04x}:{bus}:{address}", poll_interval)
        self._vid = vid
        self._pid = pid
        self._bus = bus
        self._address = address
        self._device = None
        self._intf = None
        self._ep_in = None
        self._ep_out = None

    async def _open(self) -> None:
        kwargs = {"idVendor": self._vid, "idProduct": self._pid}
        if self._bus is not None:
            kwargs["custom_match"] = lambda d: d.bus == self._bus and d.address == self._address
        dev = usb.core.find(**kwargs)
        if dev is None:
            raise DeviceNotFound(
                f"USB device not found: VID={self._vid:#06x} PID={self._pid:#06x}")

        try:
            cfg = dev.get_active_configuration()
        except usb.core.USBError:
            dev.set_configuration()
            cfg = dev.get_active_configuration()

        intf = None
        for candidate in cfg:
            if candidate.bInterfaceClass == USB_CLASS_HID:
                intf = candidate
                break
        if intf is None:
            raise DeviceNotFound(f"No HID interface on {self._path}")

        number = intf.bInterfaceNumber
        try:
            if dev.is_kernel_driver_active(number):
                dev.detach_kernel_driver(number)
                log.debug("Detached kernel driver from interface %d", number)
        except (usb.core.USBError, NotImplementedError):
            pass
        usb.util.claim_interface(dev, number)

        def find(direction):
            return usb.util.find_descriptor(
                intf,
                custom_match=lambda e: (
                    usb.util.endpoint_direction(e.bEndpointAddress) == direction
                    and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_INTR
                ),
            )

        self._ep_in = find(usb.util.ENDPOINT_IN)
        self._ep_out = find(usb.util.ENDPOINT_OUT)
        if self._ep_in is None or self._ep_out is None:
            usb.util.release_interface(dev, number)
            raise DeviceNotFound("Could not find interrupt IN/OUT endpoints")
        self._device = dev
        self._intf = number

    def _close(self) -> None:
        try:
            usb.util.release_interface(self._device, self._intf)
        except usb.core.USBError as exc:
            log.debug("release_interface failed: %s", exc)
        usb.util.dispose_resources(self._device)
        self._device = None

    @property
    def is_open(self) -> bool:
        return self._device is not None

    async def send(self, data: bytes) -> None:
        if self._device is None:
            raise Disconnected("Transport not open")
        try:
            await self._blocking(self._ep_out.write, data.ljust(self.frame_size, b"\x00"))
        except usb.core.USBError as exc:
            raise Disconnected(f"USB write failed: {exc}") from exc

    async def _read_available(self) -> bytes:
        if self._device is None:
            raise Disconnected("Transport not open")
        try:
            return bytes(await self._blocking(self._ep_in.read, self.frame_size, 1))
        except usb.core.USBTimeoutError:
            return b""
        except usb.core.USBError as exc:
            raise Disconnected(f"USB read failed: {exc}") from exc


# =========================================================================
# Real transport: serial
# =========================================================================

class SerialTransport(Transport):
    """USB CDC / UART byte stream via pyserial.

    Requires: ``pip install pyserial``
    """

    def __init__(self, port: str, baudrate: int = SERIAL_BAUDRATE,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        if not PYSERIAL_AVAILABLE:
            raise ImportError("pyserial is not installed. Install with: pip install pyserial")
        super().__init__(port, poll_interval)
        self._baudrate = baudrate
        self._port = None

    async def _open(self) -> None:
        try:
            self._port = serial.Serial(self._path, baudrate=self._baudrate,
                                       timeout=0, write_timeout=1)
        except serial.SerialException as exc:
            raise DeviceNotFound(f"Cannot open serial port {self._path}: {exc}") from exc

    def _close(self) -> None:
        self._port.close()
        self._port = None

    @property
    def is_open(self) -> bool:
        return self._port is not None

    async def send(self, data: bytes) -> None:
        if self._port is None:
            raise Disconnected("Transport not open")
        try:
            await self._blocking(self._port.write, data)
            await self._blocking(self._port.flush)
        except serial.SerialException as exc:
            raise Disconnected(f"Serial write failed: {exc}") from exc

    async def _read_available(self) -> bytes:
        if self._port is None:
            raise Disconnected("Transport not open")
        try:
            waiting = self._port.in_waiting
            return self._port.read(waiting) if waiting else b""
        except serial.SerialException as exc:
            raise Disconnected(f"Serial read failed: {exc}") from exc


# =========================================================================
# Network transport (simulators / companion apps)
# =========================================================================

class NetworkTransport(Transport):
    """TCP byte stream, e.g. Speculos or the Jade emulator."""

    def __init__(self, host: str, port: int, connect_timeout: float = 2.0,
                 poll_interval: float = DEFAULT_POLL_INTERVAL):
        super().__init__(f"tcp:{host}:{port}", poll_interval)
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def _open(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port), self._connect_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            raise DeviceNotFound(f"Nothing listening on {self._host}:{self._port}") from exc

    def _close(self) -> None:
        self._writer.close()
        self._reader = None
        self._writer = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def send(self, data: bytes) -> None:
        if self._writer is None:
            raise Disconnected("Transport not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise Disconnected(f"Socket write failed: {exc}") from exc

    async def receive(self) -> bytes:
        if self._reader is None:
            raise Disconnected("Transport not open")
        try:
            data = await self._reader.read(NETWORK_READ_SIZE)
        except (ConnectionError, OSError) as exc:
            raise Disconnected(f"Socket read failed: {exc}") from exc
        if not data:
            raise Disconnected(f"Connection to {self._host}:{self._port} closed")
        return data

    async def _read_available(self) -> bytes:
        try:
            return await asyncio.wait_for(self.receive(), self.poll_interval)
        except asyncio.TimeoutError:
            return b""
