"""
Host collaborator interface.

The relay reports exactly two facts to whatever hosts it: the current status
and the list of connected clients. Handlers here write them to the log, the
console, or several destinations at once.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime

import click

from serialrelay.core.models import StatusCode, StatusLevel

logger = logging.getLogger(__name__)


class HostInterface(ABC):
    """Abstract outbound interface to the hosting application."""

    @abstractmethod
    def report_status(self, level: StatusLevel, code: StatusCode, message: str) -> None:
        """
        Report a status change.

        Args:
            level: info or error
            code: Machine readable status code
            message: Human readable status message
        """
        pass

    @abstractmethod
    def publish_client_list(self, clients: str) -> None:
        """
        Publish the connected clients.

        Args:
            clients: Newline-joined 'address:port' entries, or 'Not connected'
        """
        pass


class LogHost(HostInterface):
    """Host that writes status and client changes to the log."""

    def __init__(self, log: logging.Logger = logger):
        self.log = log
        self.clients = ""

    def report_status(self, level: StatusLevel, code: StatusCode, message: str) -> None:
        log_level = logging.ERROR if level == StatusLevel.ERROR else logging.INFO
        self.log.log(log_level, message)

    def publish_client_list(self, clients: str) -> None:
        self.clients = clients
        self.log.debug(f"Clients: {clients.replace(chr(10), ', ')}")


class ConsoleHost(HostInterface):
    """Host that prints status lines to the console."""

    colors = {
        StatusLevel.INFO: "green",
        StatusLevel.ERROR: "red",
    }

    def report_status(self, level: StatusLevel, code: StatusCode, message: str) -> None:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        click.secho(
            f"[{ts}] [{level.value.upper()}] {message}",
            fg=self.colors.get(level),
        )

    def publish_client_list(self, clients: str) -> None:
        click.echo(f"Clients: {clients.replace(chr(10), ', ')}")


class MultiHost(HostInterface):
    """Fans reports out to several hosts; one failing host does not stop the rest."""

    def __init__(self, *hosts: HostInterface):
        self._hosts: list[HostInterface] = list(hosts)

    def add_host(self, host: HostInterface) -> None:
        self._hosts.append(host)

    def report_status(self, level: StatusLevel, code: StatusCode, message: str) -> None:
        for host in self._hosts:
            try:
                host.report_status(level, code, message)
            except Exception as e:
                logger.error(f"Host {host.__class__.__name__} failed: {e}")

    def publish_client_list(self, clients: str) -> None:
        for host in self._hosts:
            try:
                host.publish_client_list(clients)
            except Exception as e:
                logger.error(f"Host {host.__class__.__name__} failed: {e}")
