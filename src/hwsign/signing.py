"""
Signing orchestrator.

Validates a signing request client-side, drives one handle's sign
exchange and merges the result into the working PSBT.  Co-signer
results obtained independently are combined with :meth:`merge`.

Usage::

    orchestrator = SigningOrchestrator()
    psbt_a = await orchestrator.sign(ledger_handle, psbt, policy)
    psbt_b = await orchestrator.sign(coldcard_handle, psbt, policy)
    final = orchestrator.merge(psbt_a, psbt_b)
"""

from __future__ import annotations

import logging
from typing import Optional

from .bip32 import format_fingerprint
from .errors import HWIError, PolicyMismatch
from .handle import CancelToken, DeviceHandle
from .policy import WalletPolicy
from .psbt import Psbt, merge_psbts

log = logging.getLogger(__name__)


class SigningOrchestrator:
    """Client-side checks, then ``sign_tx`` and a BIP174 combine."""

    def check(self, handle: DeviceHandle, psbt: Psbt,
              policy: Optional[WalletPolicy] = None) -> None:
        """Everything that can be refused without talking to the device.

        Raises:
            ProtocolError: An input lacks UTXO data.
            PolicyMismatch: The device is not a cosigner of *policy* or
                never registered it. Also raised when no input key origin
                belongs to the device.
        """
        try:
            psbt.validate()
            if (policy is not None and handle.fingerprint is not None and policy.fingerprints()
                    and policy.key_index_for(handle.fingerprint) is None):
                raise PolicyMismatch(f"Device {format_fingerprint(handle.fingerprint)} is not "
                                     f"a cosigner of policy {policy.name!r}")
            if policy is not None and not handle.is_wallet_registered(policy):
                raise PolicyMismatch(f"Policy {policy.name!r} is not registered on this device")
            referenced = psbt.fingerprints()
            if referenced and handle.fingerprint is not None and handle.fingerprint not in referenced:
                raise PolicyMismatch(
                    f"No input derives from device {format_fingerprint(handle.fingerprint)} "
                    f"(PSBT references {', '.join(sorted(format_fingerprint(fp) for fp in referenced))})")
        except HWIError as exc:
            raise exc.with_context(handle.describe(), "sign_tx")

    async def sign(self, handle: DeviceHandle, psbt: Psbt,
                   policy: Optional[WalletPolicy] = None,
                   cancel: Optional[CancelToken] = None) -> Psbt:
        """Sign *psbt* on *handle*; returns *psbt* plus the new signatures."""
        self.check(handle, psbt, policy)
        before = psbt.signature_count()
        signed = await handle.sign_tx(psbt, policy, cancel=cancel)
        log.info("%s added %d signature(s)", handle.describe(), signed.signature_count() - before)
        return signed

    @staticmethod
    def merge(*psbts: Psbt) -> Psbt:
        """Combine co-signer results.

        Raises:
            ProtocolError: The PSBTs are for different transactions.
            MergeConflict: Two results disagree on one key's signature.
        """
        return merge_psbts(psbts)
