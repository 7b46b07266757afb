"""High-level async sync engine.

Ties together the token manager, transport, retry policy, scheduler and
state store.  One engine manages one authenticated session and every
device reachable through it.

Usage::

    async with SyncEngine(config, token_store=store, on_state_change=print) as engine:
        engine.register_device("radiator-1")
        await engine.submit_command("radiator-1", DeviceCommand(name="set_mode", params={"mode": 3}))
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import aiohttp
import pydantic

from pycloudsync._api.devices import DeviceApi, RestDeviceApi
from pycloudsync._transport import AiohttpTransport, HttpTransport, StatusClassifier, TransportClient, classify_status
from pycloudsync.auth import TokenManager
from pycloudsync.config import SyncConfig
from pycloudsync.exceptions import (
    AuthError,
    CloudSyncError,
    CommandValidationError,
    ErrorKind,
    TransportError,
    UnknownDeviceError,
)
from pycloudsync.models.command import CommandResult, DeviceCommand
from pycloudsync.models.http import ApiRequest, ApiResponse
from pycloudsync.retry import Attempt, RetryPolicy
from pycloudsync.scheduler import PollScheduler, PollState
from pycloudsync.session import Session
from pycloudsync.state.events import EventSource, PollFailureEvent, StateChangeEvent
from pycloudsync.state.policy import after_command, after_failure, after_poll, interval_for, states_differ
from pycloudsync.state.store import DeviceRecord, DeviceStateStore
from pycloudsync.token_store import MemoryTokenStore, TokenStore

_logger = logging.getLogger(__name__)

E = TypeVar("E")


class SyncEngine:
    """Keeps local device records in step with the cloud API.

    Parameters
    ----------
    config : SyncConfig
        Cadence, timeout, retry and OAuth settings.
    device_api : DeviceApi or None
        Provider adapter.  Defaults to :class:`RestDeviceApi` on
        ``config.api_base_url``.
    token_store : TokenStore or None
        Session persistence.  Defaults to an in-memory store.
    http : HttpTransport or None
        HTTP capability.  Defaults to :class:`AiohttpTransport` on
        *http_session* (created and owned by the engine when omitted).
    on_state_change, on_failure, on_auth_error : callable or None
        Host callbacks.  Exceptions they raise are logged and ignored.
    classifier : callable
        Maps an HTTP status to an :class:`ErrorKind` (``None`` = success).
    rng : random.Random or None
        Randomness for backoff jitter and initial poll jitter.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        device_api: DeviceApi | None = None,
        token_store: TokenStore | None = None,
        http: HttpTransport | None = None,
        http_session: aiohttp.ClientSession | None = None,
        token_manager: TokenManager | None = None,
        retry_policy: RetryPolicy | None = None,
        store: DeviceStateStore | None = None,
        on_state_change: Callable[[StateChangeEvent], None] | None = None,
        on_failure: Callable[[PollFailureEvent], None] | None = None,
        on_auth_error: Callable[[AuthError], None] | None = None,
        classifier: StatusClassifier = classify_status,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._rng = rng or random.Random()
        self._api: DeviceApi = device_api or RestDeviceApi(config.api_base_url)
        self._token_store: TokenStore = token_store or MemoryTokenStore()
        self._http = http
        self._http_session = http_session
        self._owns_http_session = False
        self._classifier = classifier
        self._transport: TransportClient | None = None
        self._tokens = token_manager
        self._retry = retry_policy or RetryPolicy.from_config(config, rng=self._rng)
        self._store = store or DeviceStateStore()
        self._scheduler = PollScheduler(
            self._poll_cycle,
            fallback_delay=config.normal_poll_interval,
            shutdown_grace=config.request_timeout,
        )
        self._on_state_change = on_state_change
        self._on_failure = on_failure
        self._on_auth_error = on_auth_error
        self._clock = clock
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Build the HTTP stack and arm every registered device."""
        if self._started:
            return
        if self._scheduler.closed:
            raise CloudSyncError("Engine was closed; create a new one")
        if self._http is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
                self._owns_http_session = True
            self._http = AiohttpTransport(self._http_session)
        self._transport = TransportClient(
            self._http,
            timeout=self._config.request_timeout,
            classifier=self._classifier,
        )
        if self._tokens is None:
            self._tokens = TokenManager(
                self._transport,
                self._config.oauth,
                self._token_store,
                safety_margin=self._config.token_refresh_safety_margin,
            )
        self._started = True
        for device_id in self._store:
            self._scheduler.arm(device_id, self._initial_delay())
        _logger.info("Sync engine started with %d device(s)", len(self._store))

    async def close(self) -> None:
        """Stop all timers, settle in-flight cycles, release HTTP resources."""
        await self._scheduler.close()
        if self._tokens is not None:
            await self._tokens.close()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._http = None
        self._started = False
        _logger.info("Sync engine closed")

    def _require_started(self) -> tuple[TransportClient, TokenManager]:
        if not self._started or self._transport is None or self._tokens is None:
            raise CloudSyncError("Engine not started. Use 'async with SyncEngine(...) as engine:'")
        return self._transport, self._tokens

    @property
    def store(self) -> DeviceStateStore:
        return self._store

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    @property
    def token_manager(self) -> TokenManager:
        return self._require_started()[1]

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, username: str, password: str) -> Session:
        """Log in with user credentials and resume polling."""
        _, tokens = self._require_started()
        session = await tokens.login_with_password(username, password)
        self._scheduler.resume()
        return session

    async def restore_session(self, session: Session) -> None:
        """Install a session obtained by the host and resume polling."""
        _, tokens = self._require_started()
        await tokens.restore(session)
        self._scheduler.resume()

    def _handle_auth_error(self, exc: AuthError) -> None:
        if self._scheduler.paused:
            return
        _logger.warning("Authentication lost (%s); polling paused until re-authentication", exc)
        self._scheduler.pause()
        self._emit(self._on_auth_error, exc)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def register_device(self, device_id: str, initial_state: Mapping[str, Any] | None = None) -> DeviceRecord:
        """Start tracking *device_id*; its first poll is jittered."""
        device_id = device_id.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        if device_id in self._store:
            _logger.info("Device %s registered again; previous record replaced", device_id)
            self._scheduler.cancel(device_id)
        record = self._store.add(device_id, initial_state)
        if self._started:
            self._scheduler.arm(device_id, self._initial_delay())
        return record

    def remove_device(self, device_id: str) -> bool:
        """Stop polling *device_id* and forget its record."""
        self._scheduler.cancel(device_id)
        removed = self._store.remove(device_id)
        if removed:
            _logger.info("Device %s removed", device_id)
        return removed

    def snapshot(self, device_id: str) -> DeviceRecord:
        return self._store.get(device_id)

    def poll_state(self, device_id: str) -> PollState:
        """Scheduler slot of *device_id*.

        Describes timer-driven polls only; ``in_flight`` may still be
        waiting on the device lock.  Use :meth:`is_busy` to include
        manual refreshes and commands.
        """
        return self._scheduler.state(device_id)

    def is_busy(self, device_id: str) -> bool:
        """Whether any poll or command for *device_id* is running or queued."""
        return self._store.busy(device_id)

    def _initial_delay(self) -> float:
        jitter = self._config.initial_poll_jitter
        return self._rng.uniform(0.0, jitter) if jitter > 0 else 0.0

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def refresh_device(self, device_id: str) -> DeviceRecord:
        """Poll *device_id* now, outside its schedule, and re-arm it."""
        self._require_started()
        generation = self._store.generation(device_id)
        if generation is None:
            raise UnknownDeviceError(device_id)
        delay = await self._poll_cycle(device_id)
        if self._store.generation(device_id) == generation:
            self._scheduler.arm(device_id, delay)
        return self._store.get(device_id)

    async def _poll_cycle(self, device_id: str) -> float:
        """One poll: read, merge, notify.  Returns the delay until the next one."""
        normal = self._config.normal_poll_interval
        # Taken before queueing on the lock: a re-registration while waiting
        # turns this cycle into a no-op.
        generation = self._store.generation(device_id)
        if generation is None:
            return normal
        async with self._store.exclusive(device_id):
            if self._store.generation(device_id) != generation:
                return normal
            try:
                response = await self._execute(self._api.build_read_request(device_id), label="poll")
                new_state = self._api.parse_state(device_id, response)
            except AuthError as exc:
                self._handle_auth_error(exc)
                return normal
            except TransportError as exc:
                if self._store.generation(device_id) != generation:
                    return normal
                failures = self._store.record_failure(device_id, exc.kind, after_failure())
                _logger.warning(
                    "Poll for %s failed (%s); %d consecutive failure(s), keeping last-known state",
                    device_id,
                    exc.kind.value,
                    failures,
                )
                self._emit(
                    self._on_failure,
                    PollFailureEvent(
                        device_id=device_id,
                        error_kind=exc.kind,
                        consecutive_failures=failures,
                        message=str(exc),
                    ),
                )
                return normal

            if self._store.generation(device_id) != generation:
                _logger.debug("Device %s removed during poll; result discarded", device_id)
                return normal
            return self._apply_state(device_id, new_state, EventSource.POLL)

    def _apply_state(self, device_id: str, new_state: Mapping[str, Any], source: EventSource) -> float:
        record = self._store.get(device_id)
        previous = record.state
        changed = states_differ(previous, new_state)
        if source is EventSource.POLL:
            plan = after_poll(record.cadence_plan, changed=changed, decay_count=self._config.quick_poll_decay_count)
        else:
            plan = after_command(self._config.quick_poll_decay_count)
        self._store.record_success(device_id, new_state, plan)

        if changed:
            _logger.debug("State of %s changed (%s)", device_id, source.value)
            self._emit(
                self._on_state_change,
                StateChangeEvent(
                    device_id=device_id,
                    previous_state=previous,
                    new_state=copy.deepcopy(dict(new_state)),
                    source=source,
                ),
            )
        return interval_for(plan.cadence, self._config)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit_command(
        self,
        device_id: str,
        command: DeviceCommand | Mapping[str, Any],
    ) -> CommandResult:
        """Send *command* to *device_id* and switch it to quick polling.

        Raises
        ------
        CommandValidationError
            Rejected locally; nothing was sent.
        AuthError
            The session is gone; the host must re-authenticate.
        TransportError
            The last error once retries are exhausted or not allowed.
        """
        self._require_started()
        if isinstance(command, DeviceCommand):
            cmd = command
        else:
            try:
                cmd = DeviceCommand.model_validate(command)
            except pydantic.ValidationError as exc:
                raise CommandValidationError(f"Invalid command: {exc}") from exc
        generation = self._store.generation(device_id)
        if generation is None:
            raise UnknownDeviceError(device_id)
        self._api.validate_command(device_id, cmd)
        request = self._api.build_command_request(device_id, cmd)

        async with self._store.exclusive(device_id):
            if self._store.generation(device_id) != generation:
                raise UnknownDeviceError(device_id)
            try:
                response = await self._execute(request, label=f"command {cmd.name}")
            except AuthError as exc:
                self._handle_auth_error(exc)
                raise
            _logger.info("Command %s accepted for %s (HTTP %d)", cmd.name, device_id, response.status_code)

            echoed = self._api.parse_command_response(device_id, response)
            changed = False
            if self._store.generation(device_id) == generation:
                if echoed is not None:
                    changed = states_differ(self._store.get_state(device_id), echoed)
                    self._apply_state(device_id, echoed, EventSource.COMMAND)
                else:
                    self._store.set_cadence(device_id, after_command(self._config.quick_poll_decay_count))

        if self._store.generation(device_id) == generation:
            self._scheduler.arm(device_id, self._config.quick_poll_interval)
        return CommandResult(
            device_id=device_id,
            command=cmd,
            status_code=response.status_code,
            response=response.data,
            state_changed=changed,
        )

    # ------------------------------------------------------------------
    # Resilient request execution
    # ------------------------------------------------------------------

    async def _execute(self, request: ApiRequest, *, label: str) -> ApiResponse:
        """Acquire a token and send *request*, retrying per the policy.

        A rejected token is refreshed and the request repeated once
        before the retry policy is consulted.  When the policy gives up
        the last error is re-raised unchanged.
        """
        transport, tokens = self._require_started()
        started = self._clock()
        attempt = 1
        reauthorized = False

        while True:
            session: Session | None = None
            try:
                session = await tokens.acquire_valid_token()
                return await transport.send(request, session)
            except TransportError as exc:
                if exc.kind is ErrorKind.AUTH_REJECTED and session is not None and not reauthorized:
                    reauthorized = True
                    tokens.invalidate(session)
                    _logger.info("%s: token rejected; retrying once with a refreshed token", label)
                    continue

                decision = self._retry.next_action(
                    Attempt(number=attempt, error_kind=exc.kind, elapsed=self._clock() - started)
                )
                if not decision.retry:
                    if self._retry.is_retryable(exc.kind):
                        _logger.info("%s: giving up after %d attempt(s): %s", label, attempt, exc)
                    raise
                _logger.info(
                    "%s: attempt %d failed (%s); retrying in %.2fs",
                    label,
                    attempt,
                    exc.kind.value,
                    decision.delay,
                )
                await asyncio.sleep(decision.delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    @staticmethod
    def _emit(callback: Callable[[E], None] | None, event: E) -> None:
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            _logger.exception("Event callback %r failed", callback)
