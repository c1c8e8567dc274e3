"""hwsign version information."""

__version__ = "0.3.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history:
# 0.1.0 - Initial release: Ledger APDU adapter over HID, discovery, PSBT combine
# 0.2.0 - Coldcard encrypted channel, Jade CBOR RPC with PIN server callback,
#         Specter line protocol, keystore pinning for Coldcard
# 0.3.0 - Per-handle lock, cancel tokens, stale-frame drain, query retries,
#         Speculos and Jade emulator endpoints, HWSIGN_* environment config
