import asyncio
import logging
import ssl
from datetime import datetime, timezone
from typing import Optional

from asyncio_mqtt import Client, MqttCodeError, MqttError

LOGGER_NAME = "greenhouse.hub.mqtt"
MAX_BACKOFF_SECONDS = 30.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    iso = dt.astimezone(timezone.utc).isoformat(timespec="seconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


class MqttManager:
    """Keeps one broker connection alive for publishing actuator commands."""

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        tls: bool = False,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.tls = tls
        self.log = logging.getLogger(LOGGER_NAME)
        self._client: Optional[Client] = None
        self._lock = asyncio.Lock()
        self._should_run = True
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._last_connect_time: Optional[datetime] = None
        self._last_disconnect_time: Optional[datetime] = None
        self._last_disconnect_reason: Optional[str] = None

    async def connect(self) -> None:
        self._should_run = True
        async with self._lock:
            await self._open()

    def get_client(self) -> Client:
        if not self._client:
            raise RuntimeError("MQTT client is not connected")
        return self._client

    async def disconnect(self) -> None:
        self._should_run = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        async with self._lock:
            await self._close()

    async def notify_disconnect(self, source: str, exc: BaseException | None = None) -> None:
        """Called by publishers that observed a dead connection; schedules a reconnect."""
        if not self._should_run:
            return
        if exc:
            self.log.warning("MQTT disconnect reported by %s: %s", source, exc)
            self._last_disconnect_reason = f"{source}: {exc}"
        else:
            self.log.warning("MQTT disconnect reported by %s", source)
            self._last_disconnect_reason = source
        self._last_disconnect_time = _utc_now()

        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="mqtt-reconnect")

    async def _reconnect_loop(self) -> None:
        backoff = 1.0
        try:
            while self._should_run:
                try:
                    async with self._lock:
                        await self._close()
                    await asyncio.sleep(backoff)
                    async with self._lock:
                        if not self._should_run:
                            return
                        await self._open()
                        self.log.info("MQTT reconnected after backoff %.1fs", backoff)
                        return
                except asyncio.CancelledError:
                    raise
                except MqttError as exc:
                    self.log.warning("MQTT reconnect attempt failed: %s", exc)

                backoff = min(backoff * 2.0, MAX_BACKOFF_SECONDS)
        finally:
            self._reconnect_task = None

    async def _open(self) -> None:
        kwargs = {}
        if self.username:
            kwargs["username"] = self.username
            kwargs["password"] = self.password
        if self.tls:
            kwargs["tls_context"] = ssl.create_default_context()

        client = Client(self.host, port=self.port, client_id=self.client_id, **kwargs)
        await client.connect()
        self._client = client
        self._last_connect_time = _utc_now()
        self._last_disconnect_reason = None
        self.log.info("MQTT connected to %s:%s", self.host, self.port)

    async def _close(self) -> None:
        if not self._client:
            return
        try:
            await self._client.disconnect()
        except MqttError:
            # MqttCodeError included; the socket may already be gone
            await self._client.force_disconnect()
        finally:
            self.log.info("MQTT disconnected")
            self._client = None
            self._last_disconnect_time = _utc_now()
            if self._last_disconnect_reason is None:
                self._last_disconnect_reason = "shutdown"

    def status_snapshot(self) -> dict:
        reconnecting = self._reconnect_task is not None and not self._reconnect_task.done()
        return {
            "connected": self._client is not None,
            "reconnecting": reconnecting,
            "host": self.host,
            "port": self.port,
            "client_id": self.client_id,
            "last_connect_time": _iso(self._last_connect_time),
            "last_disconnect_time": _iso(self._last_disconnect_time),
            "last_disconnect_reason": self._last_disconnect_reason,
        }


def is_not_connected_error(exc: BaseException) -> bool:
    if isinstance(exc, MqttCodeError):
        rc = exc.rc
        if isinstance(rc, int) and rc in {4, 7}:
            return True
    if isinstance(exc, MqttError):
        return "Disconnected" in str(exc)
    return False


_manager: Optional[MqttManager] = None

def get_mqtt_manager() -> Optional[MqttManager]:
    return _manager

async def startup(settings):
    global _manager
    manager = MqttManager(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        tls=settings.mqtt_tls,
    )
    try:
        await manager.connect()
        _manager = manager
    except MqttError as e:
        logging.getLogger(LOGGER_NAME).error("MQTT failed to connect: %s", e)
        _manager = None

async def shutdown():
    global _manager
    if _manager:
        await _manager.disconnect()
        _manager = None
