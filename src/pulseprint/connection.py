"""MQTT session and reconnect supervisor for a printer's report topic.

A :class:`DeviceSession` owns exactly one connect → subscribe → receive
cycle.  A :class:`ReconnectSupervisor` wraps sessions in an exponential
backoff state machine::

    CONNECTING → (open + subscribe ok) → SUBSCRIBED → (poll error) → BACKOFF → CONNECTING
               → (failure) →                          BACKOFF → CONNECTING
    any state  → (request_shutdown) → SHUTTING_DOWN

The supervisor only stops on :meth:`ReconnectSupervisor.request_shutdown`,
task cancellation, or when the event consumer goes away.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import ssl
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Optional

import aiomqtt
import orjson

from pulseprint.channel import ChannelClosedError, EventChannel, Interrupted, guarded
from pulseprint.config import MqttSettings, PrinterConfig, ReconnectConfig
from pulseprint.decoder import DecodeError, decode
from pulseprint.models import Connected, Disconnected, Message, SubscriptionEvent

logger = logging.getLogger(__name__)

PUSHALL_REQUEST = {"pushing": {"sequence_id": "0", "command": "pushall"}}

Emit = Callable[[SubscriptionEvent], Awaitable[None]]


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    BACKOFF = "BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class SessionError(Exception):
    """The transport failed while the session was in use."""


class ConnectError(SessionError):
    """The broker connection could not be established."""


class SubscribeError(SessionError):
    """The report topic subscription was rejected or failed."""


def insecure_tls_context() -> ssl.SSLContext:
    """TLS context that accepts the printer's self-signed certificate.

    Printers sit on the local network and present certificates that do not
    chain to any public CA, so verification is off.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


class DeviceSession:
    """One MQTT connection subscribed to a single printer's report topic.

    Parameters
    ----------
    printer:
        Connection descriptor (address, credentials, TLS flag).
    settings:
        Shared transport settings.
    client_factory:
        Builds the MQTT client; defaults to :class:`aiomqtt.Client`.
    """

    def __init__(
        self,
        printer: PrinterConfig,
        settings: Optional[MqttSettings] = None,
        client_factory: Callable[..., Any] = aiomqtt.Client,
    ) -> None:
        self._printer = printer
        self._settings = settings or MqttSettings()
        self._client_factory = client_factory
        self._client: Any = None
        self._stack: Optional[AsyncExitStack] = None

    @property
    def printer(self) -> PrinterConfig:
        return self._printer

    @property
    def report_topic(self) -> str:
        return self._printer.report_topic

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        """Connect to the printer's broker.

        Raises
        ------
        ConnectError
            On refusal, network error, invalid address, or timeout.
        """
        if self._client is not None:
            raise RuntimeError("Session is already open")

        stack = AsyncExitStack()
        try:
            client = self._client_factory(**self._client_kwargs())
            await asyncio.wait_for(
                stack.enter_async_context(client),
                timeout=self._settings.connection_timeout_secs,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(
                f"Timed out connecting to {self._printer.mqtt_url}"
            ) from exc
        # ValueError covers unresolvable host names (IDNA UnicodeError) and
        # host/port values the client rejects.
        except (aiomqtt.MqttError, OSError, ValueError) as exc:
            raise ConnectError(
                f"Failed to connect to {self._printer.mqtt_url}: {exc}"
            ) from exc

        self._client = client
        self._stack = stack
        logger.info(
            "Connected to printer '%s' at %s",
            self._printer.name,
            self._printer.mqtt_url,
        )

    async def subscribe(self) -> None:
        """Subscribe to the report topic (QoS 0).

        Raises
        ------
        SubscribeError
            If the broker rejects the subscription or the link drops.
        """
        client = self._require_client()
        try:
            await client.subscribe(self.report_topic, qos=0)
        except (aiomqtt.MqttError, OSError) as exc:
            raise SubscribeError(
                f"Failed to subscribe to {self.report_topic}: {exc}"
            ) from exc
        logger.info("Subscribed to %s", self.report_topic)

    async def request_full_status(self) -> None:
        """Ask the printer to publish a full status snapshot."""
        client = self._require_client()
        try:
            await client.publish(
                self._printer.request_topic, orjson.dumps(PUSHALL_REQUEST), qos=0
            )
        except (aiomqtt.MqttError, OSError) as exc:
            raise SessionError(f"Failed to request full status: {exc}") from exc
        logger.debug("Requested full status on %s", self._printer.request_topic)

    async def poll_loop(self, emit: Emit) -> None:
        """Receive reports until the connection drops.

        Each publish on the report topic is decoded and passed to *emit* as a
        :class:`~pulseprint.models.Message`.  Publishes on other topics are
        ignored.  Decode failures are logged and skipped.

        Returns normally if the broker ends the stream.

        Raises
        ------
        SessionError
            On any transport error.  The session does not reconnect itself.
        """
        client = self._require_client()
        try:
            async for mqtt_message in client.messages:
                topic = str(mqtt_message.topic)
                if topic != self.report_topic:
                    logger.debug("Ignoring publish on %s", topic)
                    continue

                payload = mqtt_message.payload
                if payload is None:
                    payload = b""
                try:
                    decoded = decode(payload)
                except DecodeError as exc:
                    logger.warning("Failed to decode report on %s: %s", topic, exc)
                    logger.warning(
                        "Raw message%s: %s",
                        " (truncated)" if exc.truncated else "",
                        exc.raw_excerpt,
                    )
                    continue

                await emit(Message(decoded))
        except aiomqtt.MqttError as exc:
            raise SessionError(f"MQTT event loop error: {exc}") from exc

    async def close(self) -> None:
        """Disconnect, ignoring errors from an already-dead link."""
        stack, self._stack, self._client = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except (aiomqtt.MqttError, OSError) as exc:
            logger.debug("Error while closing session: %s", exc)

    # ── helpers ─────────────────────────────────────────────────────

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Session is not open")
        return self._client

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "hostname": self._printer.ip,
            "port": self._printer.port,
            "username": self._settings.username,
            "password": self._printer.access_code,
            "identifier": self._settings.client_id,
            "keepalive": self._settings.keep_alive_secs,
            "logger": logger,
        }
        if self._printer.use_tls:
            kwargs["tls_context"] = insecure_tls_context()
        return kwargs


class Backoff:
    """Exponential backoff: ``initial``, doubled per failure, capped at ``maximum``."""

    def __init__(self, initial: float = 5.0, maximum: float = 60.0, multiplier: int = 2) -> None:
        self._initial = initial
        self._maximum = maximum
        self._multiplier = multiplier
        self._current = initial

    @property
    def current(self) -> float:
        """Delay the next failure will wait."""
        return self._current

    def next_delay(self) -> float:
        """Return the delay for this failure and grow the next one."""
        delay = self._current
        self._current = min(self._current * self._multiplier, self._maximum)
        return delay

    def reset(self) -> None:
        self._current = self._initial


class ReconnectSupervisor:
    """Keeps one printer subscribed for as long as the process runs.

    Parameters
    ----------
    printer:
        Connection descriptor for the printer.
    channel:
        Where :class:`Connected`, :class:`Disconnected` and
        :class:`Message` events are sent.  Closed when the supervisor stops.
    settings:
        Transport settings handed to each session.
    reconnect:
        Backoff parameters.
    session_factory:
        Builds a fresh :class:`DeviceSession` per attempt.
    sleep:
        Backoff sleep; injectable for tests.
    """

    def __init__(
        self,
        printer: PrinterConfig,
        channel: EventChannel,
        settings: Optional[MqttSettings] = None,
        reconnect: Optional[ReconnectConfig] = None,
        session_factory: Optional[Callable[[PrinterConfig], DeviceSession]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._printer = printer
        self._channel = channel
        self._settings = settings or MqttSettings()
        self._reconnect = reconnect or ReconnectConfig()
        self._session_factory = session_factory or (
            lambda p: DeviceSession(p, self._settings)
        )
        self._sleep = sleep
        self._backoff = Backoff(
            initial=self._reconnect.initial_delay_s,
            maximum=self._reconnect.max_delay_s,
            multiplier=self._reconnect.backoff_multiplier,
        )
        self._state = ConnectionState.CONNECTING
        self._shutdown = asyncio.Event()
        self._session: Optional[DeviceSession] = None
        self._attempt = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    def request_shutdown(self) -> None:
        """Stop the supervisor; in-flight network operations are abandoned."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested for printer '%s'", self._printer.name)
        self._shutdown.set()

    async def run(self) -> None:
        """Run the reconnect loop until shutdown or consumer loss."""
        logger.info(
            "Monitoring printer '%s' (%s, device %s)",
            self._printer.name,
            self._printer.mqtt_url,
            self._printer.device_id,
        )
        try:
            while not self._shutdown.is_set():
                await self._cycle()
        except Interrupted:
            pass
        except ChannelClosedError:
            logger.warning("Event consumer has gone away, stopping supervisor")
        finally:
            await self._close_session()
            self._set_state(ConnectionState.SHUTTING_DOWN)
            self._channel.close()

    # ── internal: one connect → receive → backoff cycle ─────────────

    async def _cycle(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        session = self._session_factory(self._printer)
        self._session = session

        try:
            await guarded(session.open(), self._shutdown)
            await guarded(session.subscribe(), self._shutdown)
        except SessionError as exc:
            logger.warning("Connection to printer '%s' failed: %s", self._printer.name, exc)
            await self._close_session()
            await self._wait_backoff()
            return

        self._set_state(ConnectionState.SUBSCRIBED)
        self._backoff.reset()
        self._attempt = 0
        await guarded(self._channel.send(Connected()), self._shutdown)

        if self._settings.request_full_status_on_connect:
            try:
                await guarded(session.request_full_status(), self._shutdown)
            except SessionError as exc:
                logger.warning("%s", exc)

        try:
            await guarded(session.poll_loop(self._channel.send), self._shutdown)
            reason = "Connection closed by broker"
        except SessionError as exc:
            reason = str(exc)

        await self._close_session()
        logger.warning("Disconnected from printer '%s': %s", self._printer.name, reason)
        await guarded(self._channel.send(Disconnected(reason)), self._shutdown)
        await self._wait_backoff()

    async def _wait_backoff(self) -> None:
        """Sleep for the current backoff delay, waking early on shutdown."""
        self._set_state(ConnectionState.BACKOFF)
        self._attempt += 1

        delay = self._backoff.next_delay()
        jitter_pct = self._reconnect.jitter_pct / 100.0
        if jitter_pct:
            delay = max(0.1, delay + delay * jitter_pct * (2 * random.random() - 1))

        logger.warning(
            "Reconnecting to '%s' in %.1fs (attempt %d)",
            self._printer.name,
            delay,
            self._attempt,
        )
        await guarded(self._sleep(delay), self._shutdown)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        if old is not new:
            logger.info("Connection state: %s → %s", old.value, new.value)
