"""Shared constants for hwsign.

USB identifiers, default timeouts and network endpoints used by the
transports, the adapters and discovery.
"""

# =========================================================================
# USB identifiers
# =========================================================================

# Ledger: every model shares the vendor ID, the product ID high byte
# selects the model.  The Bitcoin app lives on usage page 0xFFA0.
LEDGER_VID = 0x2C97
LEDGER_USAGE_PAGE = 0xFFA0
LEDGER_MODELS = {
    0x00: "Blue",
    0x10: "Nano S",
    0x40: "Nano X",
    0x50: "Nano S Plus",
    0x60: "Stax",
    0x70: "Flex",
}

COLDCARD_VID = 0xD13E
COLDCARD_PID = 0xCC10

# Jade enumerates as a USB serial bridge; several chips are in the field.
JADE_SERIAL_IDS = [
    (0x10C4, 0xEA60),  # CP210x
    (0x1A86, 0x55D4),  # CH9102F
    (0x0403, 0x6001),  # FT232
    (0x1A86, 0x7523),  # CH340
    (0x303A, 0x4001),  # ESP32-S3 native
    (0x303A, 0x1001),  # ESP32-S3 JTAG/serial
]

SPECTER_SERIAL_IDS = [
    (0xF055, 0x0013),
]

# =========================================================================
# Transport sizes
# =========================================================================

HID_REPORT_SIZE = 64
SERIAL_BAUDRATE = 115200
NETWORK_READ_SIZE = 4096

# =========================================================================
# Timing defaults (seconds)
# =========================================================================

DEFAULT_QUERY_TIMEOUT = 10.0
DEFAULT_CONFIRMATION_TIMEOUT = 300.0
DEFAULT_SCAN_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_DRAIN_QUIET = 0.1
DEFAULT_RETRIES = 1

# =========================================================================
# Simulator / companion endpoints
# =========================================================================

LEDGER_SIMULATOR_ADDRESS = ("127.0.0.1", 9999)
JADE_SIMULATOR_ADDRESS = ("127.0.0.1", 30121)

NETWORKS = ("mainnet", "testnet")
