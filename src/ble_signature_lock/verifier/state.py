"""
Authentication state machine for the signing lock.

States:
    AWAITING_CHALLENGE -> AWAITING_ONBOARD_CONFIRMATION -> RESPONSE_READY
        -> SIGNATURE_VERIFIED | KEY_MISMATCH | SIGNATURE_REJECTED
        -> (reset) -> AWAITING_CHALLENGE

Every input (transport events, user actions, timeouts) is posted to one
asyncio queue and applied by a single consumer, so the session is never
touched concurrently. Transport writes and reads are issued as background
tasks bound to the session epoch they were issued under; an operation
from an older session is dropped, and a read result comes back as its own
event carrying that epoch.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .codec import (
    DecodeError,
    RemoteStateCode,
    decode_state,
    encode_challenge,
    encode_done_marker,
    encode_state_request,
)
from .config import ResetPolicy, VerifierConfig
from .crypto import SignatureVerifier, VerifyOutcome, generate_challenge
from .roles import ChannelRole, RoleBindings, ServiceDescriptor, resolve_roles
from .transport import Transport

logger = logging.getLogger(__name__)


class LockState(Enum):
    """Authentication states, as seen by the controller."""
    AWAITING_CHALLENGE = "awaiting-challenge"
    AWAITING_ONBOARD_CONFIRMATION = "awaiting-onboard-confirmation"
    RESPONSE_READY = "response-ready"
    SIGNATURE_VERIFIED = "signature-verified"
    SIGNATURE_REJECTED = "signature-rejected"
    KEY_MISMATCH = "key-mismatch"


TERMINAL_STATES = frozenset({
    LockState.SIGNATURE_VERIFIED,
    LockState.SIGNATURE_REJECTED,
    LockState.KEY_MISMATCH,
})


class DiagnosticCode(Enum):
    """Why a state update was published."""
    TRANSPORT_INCOMPATIBLE = "transport-incompatible"
    MALFORMED_STATE_FRAME = "malformed-state-frame"
    MALFORMED_SIGNATURE_FRAME = "malformed-signature-frame"
    KEY_MISMATCH = "key-mismatch"
    REMOTE_SIGN_FAILED = "remote-sign-failed"
    NO_CHALLENGE = "no-challenge"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection-lost"


@dataclass
class AuthSession:
    """State of one connection. Replaced wholesale on connect and disconnect."""
    epoch: int = 0
    state: LockState = LockState.AWAITING_CHALLENGE
    challenge: Optional[bytes] = None
    bindings: RoleBindings = field(default_factory=RoleBindings)
    service_recognized: bool = False
    connected: bool = False
    read_pending: bool = False

    @property
    def usable(self) -> bool:
        return self.connected and self.service_recognized and self.bindings.complete


# -----------------------------------------------------------------
# Events
# -----------------------------------------------------------------

@dataclass(frozen=True)
class Connected:
    epoch: int


@dataclass(frozen=True)
class Disconnected:
    epoch: int


@dataclass(frozen=True)
class ServicesDiscovered:
    epoch: int
    services: tuple[ServiceDescriptor, ...]


@dataclass(frozen=True)
class DataAvailable:
    epoch: int
    channel_id: str
    value: str


@dataclass(frozen=True)
class ReadFailed:
    epoch: int
    channel_id: str
    error: str


@dataclass(frozen=True)
class BeginOrCheck:
    pass


@dataclass(frozen=True)
class ResetRequested:
    pass


@dataclass(frozen=True)
class ResponseTimeout:
    epoch: int
    token: int


Event = Union[
    Connected, Disconnected, ServicesDiscovered, DataAvailable, ReadFailed,
    BeginOrCheck, ResetRequested, ResponseTimeout,
]


# -----------------------------------------------------------------
# Updates published to the presentation layer
# -----------------------------------------------------------------

@dataclass(frozen=True)
class StateUpdate:
    state: LockState
    diagnostic: Optional[DiagnosticCode] = None


@dataclass(frozen=True)
class CompatibilityUpdate:
    compatible: bool


Update = Union[StateUpdate, CompatibilityUpdate]
Subscriber = Callable[[Update], None]


class AuthController:
    """
    Drives the challenge/response flow for one connected lock.

    Transport callbacks (on_connected, on_data, ...) and user actions
    (begin_or_check, reset) only enqueue events; run() applies them.
    """

    def __init__(
        self,
        transport: Transport,
        verifier: SignatureVerifier,
        config: Optional[VerifierConfig] = None,
    ):
        self.config = config or VerifierConfig()
        self._transport = transport
        self._verifier = verifier
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._epoch = 0
        self.session = AuthSession()
        self.compatible: Optional[bool] = None
        self._subscribers: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()
        self._io_lock = asyncio.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_token = 0
        self._runner: Optional[asyncio.Task] = None
        transport.set_listener(self)

    @property
    def state(self) -> LockState:
        return self.session.state

    # -------------------------------------------------------------
    # Observer API
    # -------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for state and compatibility updates. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, update: Update) -> None:
        for callback in list(self._subscribers):
            try:
                callback(update)
            except Exception:
                logger.exception(f"Subscriber {callback!r} failed on {update}")

    # -------------------------------------------------------------
    # Inputs (transport listener + user actions)
    # -------------------------------------------------------------

    def _post(self, event: Event) -> None:
        self._queue.put_nowait(event)

    def on_connected(self) -> None:
        self._epoch += 1
        self._post(Connected(self._epoch))

    def on_disconnected(self) -> None:
        self._epoch += 1
        self._post(Disconnected(self._epoch))

    def on_services_discovered(self, services: list[ServiceDescriptor]) -> None:
        self._post(ServicesDiscovered(self._epoch, tuple(services)))

    def on_data(self, channel_id: str, value: str) -> None:
        self._post(DataAvailable(self._epoch, channel_id, value))

    def begin_or_check(self) -> None:
        """Send a challenge when idle, or fetch the response when it is ready."""
        self._post(BeginOrCheck())

    def reset(self) -> None:
        """Re-arm the lock and return to AWAITING_CHALLENGE."""
        self._post(ResetRequested())

    # -------------------------------------------------------------
    # Reactor
    # -------------------------------------------------------------

    def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._cancel_timeout()
        tasks = list(self._tasks)
        if self._runner:
            tasks.append(self._runner)
            self._runner = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self) -> None:
        """Apply queued events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                self._dispatch(event)
            except Exception:
                logger.exception(f"Failed to apply {event!r}")
            finally:
                self._queue.task_done()

    async def wait_idle(self) -> None:
        """Wait until the queue is drained and no transport I/O is in flight."""
        while True:
            await self._queue.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    def _dispatch(self, event: Event) -> None:
        logger.debug(f"Event {event} in state {self.session.state.name}")

        if isinstance(event, Connected):
            self._handle_connected(event)
        elif isinstance(event, Disconnected):
            self._handle_disconnected(event)
        elif isinstance(event, ServicesDiscovered):
            self._handle_services(event)
        elif isinstance(event, DataAvailable):
            self._handle_data(event)
        elif isinstance(event, ReadFailed):
            self._handle_read_failed(event)
        elif isinstance(event, BeginOrCheck):
            self._handle_begin_or_check()
        elif isinstance(event, ResetRequested):
            self._reset_path()
        elif isinstance(event, ResponseTimeout):
            self._handle_timeout(event)
        else:
            raise TypeError(f"Unknown event {event!r}")

    def _is_stale(self, epoch: int, what: str) -> bool:
        if epoch != self.session.epoch:
            logger.debug(f"Discarding {what} from session {epoch} (current {self.session.epoch})")
            return True
        return False

    # -------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------

    def _handle_connected(self, event: Connected) -> None:
        self._cancel_timeout()
        self.session = AuthSession(epoch=event.epoch, connected=True)
        self.compatible = None
        logger.info(f"[STATE] Session {event.epoch} started")
        self._publish(StateUpdate(self.session.state))

    def _handle_disconnected(self, event: Disconnected) -> None:
        self._cancel_timeout()
        was_connected = self.session.connected
        self.session = AuthSession(epoch=event.epoch)
        self.compatible = None
        logger.info(f"[STATE] Connection lost, session reset (epoch {event.epoch})")
        if was_connected:
            self._publish(StateUpdate(self.session.state, DiagnosticCode.CONNECTION_LOST))

    def _handle_services(self, event: ServicesDiscovered) -> None:
        if self._is_stale(event.epoch, "service discovery"):
            return

        resolution = resolve_roles(event.services)
        session = self.session
        session.bindings = resolution.bindings
        session.service_recognized = resolution.service_recognized

        self.compatible = session.service_recognized and session.bindings.complete
        self._publish(CompatibilityUpdate(self.compatible))
        if not self.compatible:
            self._publish(StateUpdate(session.state, DiagnosticCode.TRANSPORT_INCOMPATIBLE))
            return

        # Pick up the lock's current state, then follow its changes
        state_channel = session.bindings.state_notification
        self._issue_read(state_channel)
        self._spawn(functools.partial(self._transport.set_notify, state_channel, True))

    def _handle_data(self, event: DataAvailable) -> None:
        if self._is_stale(event.epoch, f"data on {event.channel_id}"):
            return

        role = self.session.bindings.role_of(event.channel_id)
        if role is ChannelRole.STATE_NOTIFICATION:
            self._handle_state_frame(event.value)
        elif role is ChannelRole.SIGNED_RESPONSE:
            self._handle_response_frame(event.value)
        else:
            logger.debug(f"Ignoring data on unbound channel {event.channel_id}")

    def _handle_state_frame(self, frame: str) -> None:
        session = self.session
        try:
            code = decode_state(frame)
        except DecodeError as e:
            logger.warning(f"[STATE] Malformed state frame: {e}")
            self.compatible = False
            self._publish(CompatibilityUpdate(False))
            self._publish(StateUpdate(session.state, DiagnosticCode.MALFORMED_STATE_FRAME))
            return

        if code is None:
            # Unknown codes come from newer firmware; state is left as is
            logger.debug(f"[STATE] Unknown remote state {frame.strip()!r} ignored")
            return

        logger.info(f"[STATE] Remote reports {code.name}")
        if session.state in TERMINAL_STATES:
            logger.debug(f"[STATE] {code.name} ignored in {session.state.name}, waiting for reset")
            return

        if code is RemoteStateCode.WAITING:
            if session.challenge is None:
                self._cancel_timeout()
            self._transition(LockState.AWAITING_CHALLENGE)
        elif code is RemoteStateCode.WAITING_ONBOARD:
            self._arm_timeout()
            self._transition(LockState.AWAITING_ONBOARD_CONFIRMATION)
        elif code is RemoteStateCode.RESPONSE_READY:
            self._arm_timeout()
            self._transition(LockState.RESPONSE_READY)
        elif code is RemoteStateCode.SIGN_FAILED:
            self._finish(LockState.SIGNATURE_REJECTED, DiagnosticCode.REMOTE_SIGN_FAILED)

    def _handle_response_frame(self, frame: str) -> None:
        session = self.session
        if session.state is not LockState.RESPONSE_READY or not session.read_pending:
            logger.debug(f"Ignoring signed response in {session.state.name}, no read pending")
            return
        session.read_pending = False

        challenge = session.challenge
        if challenge is None:
            logger.warning("[AUTH] Response arrived but no challenge is outstanding")
            self._finish(LockState.SIGNATURE_REJECTED, DiagnosticCode.NO_CHALLENGE)
            return

        outcome = self._verifier.verify_frame(challenge, frame)
        if outcome is VerifyOutcome.VALID:
            logger.info("[AUTH] SUCCESS - Access granted!")
            self._finish(LockState.SIGNATURE_VERIFIED)
        elif outcome is VerifyOutcome.INVALID:
            logger.warning("[AUTH] FAILED - Signature does not match the lock's public key")
            self._finish(LockState.KEY_MISMATCH, DiagnosticCode.KEY_MISMATCH)
        else:
            logger.warning("[AUTH] FAILED - Malformed signature frame")
            self._finish(LockState.SIGNATURE_REJECTED, DiagnosticCode.MALFORMED_SIGNATURE_FRAME)

    def _handle_read_failed(self, event: ReadFailed) -> None:
        if self._is_stale(event.epoch, f"read failure on {event.channel_id}"):
            return

        logger.error(f"Read of {event.channel_id} failed: {event.error}")
        session = self.session
        if (
            session.bindings.role_of(event.channel_id) is ChannelRole.SIGNED_RESPONSE
            and session.read_pending
        ):
            session.read_pending = False
            self._finish(LockState.SIGNATURE_REJECTED, DiagnosticCode.MALFORMED_SIGNATURE_FRAME)

    def _handle_begin_or_check(self) -> None:
        session = self.session

        if session.state is LockState.AWAITING_CHALLENGE:
            if not session.usable:
                logger.warning("Cannot start authentication: not connected to a compatible lock")
                return
            if session.challenge is not None:
                logger.info("A challenge is already outstanding")
                return

            challenge = generate_challenge()
            session.challenge = challenge
            logger.info("[AUTH] Sending new challenge")
            logger.debug(f"[AUTH] Challenge: {challenge.hex()}")
            self._issue_writes(session.bindings.challenge_input, encode_challenge(challenge))
            self._arm_timeout()

        elif session.state is LockState.RESPONSE_READY:
            if session.read_pending:
                logger.debug("Response read already in flight")
                return
            if not session.usable:
                logger.warning("Cannot read response: not connected")
                return

            logger.info("[AUTH] Reading signed response")
            session.read_pending = True
            self._issue_read(session.bindings.signed_response)

        else:
            logger.debug(f"Nothing to do in {session.state.name}")

    def _handle_timeout(self, event: ResponseTimeout) -> None:
        if self._is_stale(event.epoch, "timeout") or event.token != self._timer_token:
            return
        self._timer = None
        logger.warning(
            f"[AUTH] No response from lock within {self.config.response_timeout}s "
            f"(state {self.session.state.name})"
        )
        self._reset_path(DiagnosticCode.TIMEOUT)

    # -------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------

    def _transition(self, new_state: LockState, diagnostic: Optional[DiagnosticCode] = None) -> None:
        old_state = self.session.state
        if old_state is new_state and diagnostic is None:
            return
        self.session.state = new_state
        if new_state is not LockState.RESPONSE_READY:
            # A read still in flight will be dropped; allow a fresh one on the next 'R'
            self.session.read_pending = False
        logger.info(f"[STATE] {old_state.name} -> {new_state.name}")
        self._publish(StateUpdate(new_state, diagnostic))

    def _finish(self, outcome: LockState, diagnostic: Optional[DiagnosticCode] = None) -> None:
        """Close the current attempt with a terminal state."""
        self._cancel_timeout()
        self.session.challenge = None
        self.session.read_pending = False
        self._transition(outcome, diagnostic)

        if outcome is LockState.SIGNATURE_VERIFIED and self.config.reset_policy is ResetPolicy.AUTO_ON_SUCCESS:
            self._reset_path()

    def _reset_path(self, diagnostic: Optional[DiagnosticCode] = None) -> None:
        """Tell the lock we are done, re-arm it, and wait for the next challenge."""
        self._cancel_timeout()
        session = self.session
        session.challenge = None
        session.read_pending = False

        if session.connected and session.bindings.state_notification:
            self._issue_writes(
                session.bindings.state_notification,
                encode_done_marker(),
                encode_state_request(),
            )

        if session.state is LockState.AWAITING_CHALLENGE and diagnostic is None:
            return
        self._transition(LockState.AWAITING_CHALLENGE, diagnostic)

    # -------------------------------------------------------------
    # Timeout
    # -------------------------------------------------------------

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        if not self.config.timeout_enabled:
            return
        token = self._timer_token
        event = ResponseTimeout(self.session.epoch, token)
        self._timer = asyncio.get_running_loop().call_later(
            self.config.response_timeout, self._post, event
        )

    def _cancel_timeout(self) -> None:
        # Bumping the token also invalidates a timeout already in the queue
        self._timer_token += 1
        if self._timer:
            self._timer.cancel()
            self._timer = None

    # -------------------------------------------------------------
    # Transport I/O
    # -------------------------------------------------------------

    def _spawn(self, operation: Callable[[], Awaitable[Any]]) -> None:
        """Queue a transport operation behind any already issued, bound to this session."""
        task = asyncio.ensure_future(self._serialized(self.session.epoch, operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serialized(self, epoch: int, operation: Callable[[], Awaitable[Any]]) -> Any:
        async with self._io_lock:
            # The link may have dropped while this operation waited its turn
            if epoch != self._epoch:
                logger.debug(f"Dropping transport operation from session {epoch} (current {self._epoch})")
                return None
            try:
                return await operation()
            except Exception as e:
                # Includes backend errors such as BleakError; the reactor keeps running
                logger.error(f"Transport operation failed: {type(e).__name__}: {e}")

    def _issue_writes(self, channel_id: str, *payloads: bytes) -> None:
        async def write_all() -> None:
            for payload in payloads:
                await self._transport.write(channel_id, payload)

        self._spawn(write_all)

    def _issue_read(self, channel_id: str) -> None:
        epoch = self.session.epoch

        async def read() -> None:
            try:
                value = await self._transport.read(channel_id)
            except Exception as e:
                self._post(ReadFailed(epoch, channel_id, f"{type(e).__name__}: {e}"))
                return
            self._post(DataAvailable(epoch, channel_id, value))

        self._spawn(read)
