"""
Device Transport Layer
======================

This module provides the bidirectional text stream used by the expect engine
to talk to a device shell. Connections are opened with Netmiko's terminal
server drivers over SSH (Paramiko) or Telnet, which hand back a raw channel
without logging in, detecting prompts or changing paging, so the whole
dialogue stays under control of the device script.

Features:
- Abstract Transport with an open/closed lifecycle and scoped acquisition
- SSH and Telnet channels through Netmiko
- Non-blocking reads polled until data, timeout or EOF
- Connection errors mapped to the worker failure taxonomy
- One transport per job; transports are never pooled or reused
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import paramiko
from netmiko import ConnectHandler, NetmikoAuthenticationException, NetmikoTimeoutException
from netmiko.exceptions import NetmikoBaseException, ReadException

from netbackup.error_handling import (
    FailureKind, TransportConnectError, TransportEOF, TransportWriteError,
)
from netbackup.inventory import DeviceRecord

logger = logging.getLogger(__name__)

NETMIKO_DEVICE_TYPES = {
    "ssh": "terminal_server",
    "telnet": "terminal_server_telnet",
}


class Transport(ABC):
    """Readable/writable text stream to one device shell."""

    def __init__(self, name: str = "transport"):
        self.name = name
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @abstractmethod
    def write(self, data: str) -> None:
        """Write immediately. Raises TransportWriteError."""

    @abstractmethod
    def read(self, timeout: float) -> str:
        """
        Wait up to ``timeout`` seconds for output.

        Returns whatever arrived (possibly a fragment of a line), an empty
        string if nothing arrived, and raises TransportEOF once the peer has
        closed the stream and no data is left.
        """

    def close(self) -> None:
        """Release the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._close()
        finally:
            logger.debug(f"Transport {self.name} closed")

    def _close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class NetmikoTransport(Transport):
    """Transport over a Netmiko terminal-server connection."""

    def __init__(self, connection: Any, name: str, poll_interval: float = 0.05):
        super().__init__(name)
        self._connection = connection
        self.poll_interval = poll_interval

    def _channel_at_eof(self) -> bool:
        remote = getattr(self._connection, "remote_conn", None)
        if isinstance(remote, paramiko.Channel):
            return remote.closed or (remote.eof_received and not remote.recv_ready())
        return False

    def write(self, data: str) -> None:
        if self._closed:
            raise TransportWriteError(f"{self.name}: write on closed transport")
        try:
            self._connection.write_channel(data)
        except (OSError, EOFError, AttributeError, paramiko.SSHException) as e:
            raise TransportWriteError(f"{self.name}: write failed: {e}") from e

    def read(self, timeout: float) -> str:
        end_time = time.monotonic() + max(timeout, 0.0)

        while True:
            if self._closed:
                raise TransportEOF(f"{self.name}: transport closed")
            try:
                data = self._connection.read_channel()
            except (ReadException, EOFError, OSError, AttributeError, paramiko.SSHException) as e:
                # disconnect() from another thread leaves remote_conn unset
                raise TransportEOF(f"{self.name}: {e}") from e

            if data:
                return data
            if self._channel_at_eof():
                raise TransportEOF(f"{self.name}: channel closed by remote device")
            if time.monotonic() >= end_time:
                return ""

            time.sleep(self.poll_interval)

    def _close(self) -> None:
        try:
            self._connection.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from {self.name}: {e}")


def build_connection_params(device: DeviceRecord) -> Dict[str, Any]:
    """Netmiko ConnectHandler parameters for a device record."""
    params: Dict[str, Any] = {
        "device_type": NETMIKO_DEVICE_TYPES[device.protocol],
        "host": device.host,
        "port": device.port,
        "username": device.username,
        "password": device.password,
        "conn_timeout": device.conn_timeout,
        "auth_timeout": device.conn_timeout,
        "banner_timeout": max(device.conn_timeout, 15),
        "fast_cli": False,
        "verbose": False,
    }

    if device.protocol == "ssh":
        if device.key_file:
            params["key_file"] = device.key_file
            params["use_keys"] = True
        else:
            params["use_keys"] = False
            params["allow_agent"] = False

    return params


def open_transport(device: DeviceRecord, poll_interval: float = 0.05) -> NetmikoTransport:
    """
    Open a fresh session to a device.

    Raises TransportConnectError with kind AUTHENTICATION_FAILED when the SSH
    layer rejects the credentials, CONNECT_ERROR otherwise.
    """
    name = f"{device.device_id}@{device.host}:{device.port}/{device.protocol}"
    start_time = time.time()

    try:
        logger.debug(f"Opening {device.protocol} session to {name}")
        connection = ConnectHandler(**build_connection_params(device))

    except NetmikoAuthenticationException as e:
        error_msg = f"Authentication failed for {name}: {e}"
        logger.error(error_msg)
        raise TransportConnectError(error_msg, FailureKind.AUTHENTICATION_FAILED) from e

    except NetmikoTimeoutException as e:
        error_msg = f"Connection timeout for {name}: {e}"
        logger.error(error_msg)
        raise TransportConnectError(error_msg) from e

    except NetmikoBaseException as e:
        error_msg = f"Netmiko error for {name}: {e}"
        logger.error(error_msg)
        raise TransportConnectError(error_msg) from e

    except (OSError, EOFError, paramiko.SSHException) as e:
        error_msg = f"Unexpected error connecting to {name}: {e}"
        logger.error(error_msg)
        raise TransportConnectError(error_msg) from e

    logger.info(f"Connected to {name} in {time.time() - start_time:.2f}s")
    return NetmikoTransport(connection, name, poll_interval=poll_interval)
