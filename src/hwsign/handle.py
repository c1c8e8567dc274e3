"""
Device handle — one open signer, one operation at a time.

Every capability operation on a handle:
  1. Is checked against the capability set before any I/O.
  2. Runs under the handle's lock, so concurrent callers queue up.
  3. Races the adapter against its timeout and the caller's cancel token.
  4. Leaves the handle *stale* if abandoned; the next operation drains
     the transport before talking to the device again.

Usage::

    handle = (await discovery.scan())[0]
    token = CancelToken()
    address = await handle.display_address(DerivationPath.parse("m/84'/0'/0'/0/0"),
                                           cancel=token)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar, Union

from .bip32 import DerivationPath, ExtendedPublicKey, format_fingerprint
from .capabilities import Capability, DeviceKind, Version
from .config import DiscoveryConfig
from .device_base import HardwareSigner, Identity
from .errors import Cancelled, Disconnected, HWIError, PolicyMismatch, Timeout
from .policy import AddressTarget, PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt

log = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Caller-side switch that aborts a pending operation."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class DeviceHandle:
    """Exclusive session with one discovered device.

    Attributes:
        adapter: Vendor protocol adapter doing the actual I/O.
        identity: Result of the identify handshake at discovery.
        capabilities: Snapshot taken when the handle was created.
        key: Registry key (vendor and transport path).
    """

    def __init__(self, adapter: HardwareSigner, identity: Identity,
                 config: Optional[DiscoveryConfig] = None, key: str = ""):
        self.adapter = adapter
        self.identity = identity
        self.config = config or DiscoveryConfig()
        self.capabilities: Capability = adapter.capabilities
        self.key = key or f"{identity.vendor}:{identity.path}"
        self._lock = asyncio.Lock()
        self._stale = False
        self._closed = False
        self._proofs: Dict[bytes, RegistrationProof] = {}

    # -- Properties ------------------------------------------------------

    @property
    def kind(self) -> DeviceKind:
        return self.identity.kind

    @property
    def vendor(self) -> str:
        return self.identity.vendor

    @property
    def fingerprint(self) -> Optional[bytes]:
        return self.identity.fingerprint

    @property
    def version(self) -> Optional[Version]:
        return self.identity.version

    @property
    def path(self) -> str:
        return self.identity.path

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stale(self) -> bool:
        return self._stale

    @property
    def busy(self) -> bool:
        """True while an operation holds the handle."""
        return self._lock.locked()

    def describe(self) -> str:
        return f"{self.kind.display_name} at {self.path}"

    def __repr__(self) -> str:
        return (f"DeviceHandle({self.kind.value}, path={self.path!r}, "
                f"fingerprint={self.identity.fingerprint_hex or None}, version={self.version})")

    # -- Execution -------------------------------------------------------

    def _check(self, operation: str, check: Callable[[], None]) -> None:
        if self._closed:
            raise Disconnected("Handle is closed", device=self.describe(), operation=operation)
        try:
            check()
        except HWIError as exc:
            raise exc.with_context(self.describe(), operation)

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]], *,
                   interactive: bool = False, cancel: Optional[CancelToken] = None,
                   retryable: bool = False) -> T:
        if self._closed:
            raise Disconnected("Handle is closed", device=self.describe(), operation=operation)
        attempts = 1 + (self.config.retries if retryable else 0)
        async with self._lock:
            for attempt in range(1, attempts + 1):
                try:
                    if self._stale:
                        await self._drain_locked()
                    return await self._attempt(operation, call, interactive, cancel)
                except HWIError as exc:
                    exc.with_context(self.describe(), operation)
                    if isinstance(exc, Disconnected):
                        self._close_locked()
                        raise
                    if exc.retryable and attempt < attempts:
                        log.warning("%s failed (%s), retry %d/%d",
                                    operation, exc.message, attempt, attempts - 1)
                        self._stale = True
                        continue
                    raise

    async def _attempt(self, operation: str, call: Callable[[], Awaitable[T]],
                       interactive: bool, cancel: Optional[CancelToken]) -> T:
        if cancel is not None and cancel.cancelled:
            raise Cancelled("Cancelled before it started")
        interactive = interactive or self.adapter.interactive_pending
        timeout = self.config.timeouts.for_operation(operation, interactive)

        task = asyncio.ensure_future(call())
        waiters = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._abandon(operation, task)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()
        await self._abandon(operation, task)
        if cancel is not None and cancel.cancelled:
            raise Cancelled("Cancelled by caller")
        raise Timeout(f"No answer within {timeout:g}s")

    async def _abandon(self, operation: str, task: asyncio.Future) -> None:
        """Stop an in-flight adapter call and mark the transport dirty."""
        self._stale = True
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except HWIError as exc:
            log.debug("Abandoned %s finished with %s", operation, exc)
        log.info("%s on %s abandoned, transport will be drained", operation, self.describe())

    async def _drain_locked(self) -> int:
        timeout = self.config.timeouts.for_operation("drain")
        try:
            discarded = await asyncio.wait_for(self.adapter.drain(), timeout)
        except asyncio.TimeoutError:
            raise Timeout("Device kept sending while draining",
                          device=self.describe(), operation="drain") from None
        self._stale = False
        return discarded

    def _close_locked(self) -> None:
        if not self._closed:
            self._closed = True
            self.adapter.close()
            log.info("Closed handle for %s", self.describe())

    # -- Lifecycle -------------------------------------------------------

    async def drain(self) -> int:
        """Discard whatever an abandoned exchange left on the wire."""
        async with self._lock:
            try:
                return await self._drain_locked()
            except Disconnected as exc:
                self._close_locked()
                raise exc.with_context(self.describe(), "drain")

    def close(self) -> None:
        self._close_locked()

    async def aclose(self) -> None:
        """Close once any in-flight operation has released the handle."""
        async with self._lock:
            self._close_locked()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()

    # -- Queries ---------------------------------------------------------

    async def identify(self, cancel: Optional[CancelToken] = None) -> Identity:
        identity = await self._run("identify", self.adapter.identify,
                                   cancel=cancel, retryable=True)
        self.identity = identity
        return identity

    async def get_version(self, cancel: Optional[CancelToken] = None) -> Version:
        return await self._run("get_version", self.adapter.get_version,
                               cancel=cancel, retryable=True)

    async def get_master_fingerprint(self, cancel: Optional[CancelToken] = None) -> bytes:
        return await self._run("get_master_fingerprint", self.adapter.get_master_fingerprint,
                               cancel=cancel, retryable=True)

    async def get_extended_pubkey(self, path: Union[str, DerivationPath], display: bool = False,
                                  cancel: Optional[CancelToken] = None) -> ExtendedPublicKey:
        """Extended public key at *path*.

        With ``display=True`` the device shows the key for verification,
        so the call gets the confirmation timeout and is never retried.
        """
        path = DerivationPath.parse(path)
        self._check("get_extended_pubkey", lambda: self.adapter.check_get_xpub(path))
        return await self._run("get_extended_pubkey",
                               lambda: self.adapter.get_extended_pubkey(path, display),
                               interactive=display, cancel=cancel, retryable=not display)

    # -- Wallet policies -------------------------------------------------

    def proof_for(self, policy: WalletPolicy) -> Optional[RegistrationProof]:
        return self._proofs.get(policy.policy_id)

    def is_wallet_registered(self, policy: WalletPolicy) -> bool:
        return policy.is_default or policy.policy_id in self._proofs

    def add_proof(self, proof: RegistrationProof) -> None:
        """Reuse a proof obtained in an earlier session.

        Raises:
            PolicyMismatch: The proof belongs to another device.
        """
        if self.fingerprint is not None and proof.fingerprint != self.fingerprint:
            raise PolicyMismatch(
                f"Proof is for device {format_fingerprint(proof.fingerprint)}, "
                f"not {format_fingerprint(self.fingerprint)}",
                device=self.describe(), operation="register_wallet")
        self._proofs[proof.policy_id] = proof

    async def register_wallet(self, policy: WalletPolicy,
                              cancel: Optional[CancelToken] = None) -> RegistrationProof:
        """Register *policy*; returns the cached proof if already done."""
        self._check("register_wallet", lambda: self.adapter.check_register(policy))
        cached = self._proofs.get(policy.policy_id)
        if cached is not None:
            log.debug("Policy %r already registered on %s", policy.name, self.describe())
            return cached
        proof = await self._run("register_wallet", lambda: self.adapter.register_wallet(policy),
                                interactive=True, cancel=cancel)
        self._proofs[policy.policy_id] = proof
        return proof

    def _require_proof(self, policy: WalletPolicy, operation: str) -> Optional[RegistrationProof]:
        if policy.is_default:
            return self._proofs.get(policy.policy_id)
        proof = self._proofs.get(policy.policy_id)
        if proof is None:
            raise PolicyMismatch(f"Policy {policy.name!r} is not registered on this device",
                                 device=self.describe(), operation=operation)
        return proof

    # -- Confirmations ---------------------------------------------------

    async def display_address(self, target: AddressTarget,
                              cancel: Optional[CancelToken] = None) -> str:
        if isinstance(target, str):
            target = DerivationPath.parse(target)
        if isinstance(target, PolicyAddress) and target.proof is None:
            proof = self._require_proof(target.policy, "display_address")
            target = dataclasses.replace(target, proof=proof)
        elif isinstance(target, PolicyAddress) and not target.proof.matches(target.policy, self.fingerprint):
            raise PolicyMismatch(f"Proof does not belong to policy {target.policy.name!r} on this device",
                                 device=self.describe(), operation="display_address")
        self._check("display_address", lambda: self.adapter.check_display(target))
        return await self._run("display_address", lambda: self.adapter.display_address(target),
                               interactive=True, cancel=cancel)

    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      cancel: Optional[CancelToken] = None) -> Psbt:
        """Sign *psbt* and return it with this device's signatures added.

        Raises:
            PolicyMismatch: *policy* was never registered on this handle.
            MergeConflict: The device produced a signature that differs
                from one already in *psbt*.
        """
        self._check("sign_tx", lambda: self.adapter.check_sign(policy))
        proof = self._require_proof(policy, "sign_tx") if policy is not None else None
        signed = await self._run("sign_tx",
                                 lambda: self.adapter.sign_tx(psbt.copy(), policy, proof),
                                 interactive=True, cancel=cancel)
        try:
            return psbt.combine(signed)
        except HWIError as exc:
            raise exc.with_context(self.describe(), "sign_tx")
