"""PPPoE management adapters for MikroTik access concentrators.

Two implementations share one capability set: the RouterOS API
(``routeros_api``) and an SSH line shell (``paramiko``). Every call opens its
own connection and closes it before returning, including on error.
"""

from __future__ import annotations

import logging
import re
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import paramiko
import routeros_api
from routeros_api import exceptions as routeros_exceptions

from app.config import settings
from app.models.network import Device, DeviceProtocol
from app.services.exceptions import (
    DeviceCommandFailed,
    DeviceObjectNotFound,
    DeviceUnreachable,
)
from app.services.units import (
    format_duration,
    format_rate_limit,
    parse_duration,
    sanitize_comment,
)

logger = logging.getLogger(__name__)

SECRET_PATH = "/ppp/secret"
PROFILE_PATH = "/ppp/profile"
ACTIVE_PATH = "/ppp/active"
IDENTITY_PATH = "/system/identity"


@dataclass
class DeviceConnection:
    host: str
    port: int
    username: str
    password: str | None
    use_ssl: bool = False
    verify_host_key: bool = False
    connect_timeout: int = 10
    command_timeout: int = 30


@dataclass
class DeviceCredential:
    name: str
    secret: str | None = None
    profile: str | None = None
    service: str | None = None
    comment: str | None = None
    disabled: bool = False


@dataclass
class DeviceProfile:
    name: str
    rate_limit: str | None = None
    session_timeout: str | None = None
    local_address: str | None = None
    remote_address: str | None = None
    comment: str | None = None
    disabled: bool = False


@dataclass
class DeviceSession:
    name: str
    address: str | None = None
    local_address: str | None = None
    calling_station_id: str | None = None
    uptime: str | None = None
    service: str | None = None

    @property
    def uptime_seconds(self) -> int:
        return parse_duration(self.uptime)


def _is_true(value) -> bool:
    return str(value).lower() in ("true", "yes")


def _credential_from_item(item: dict) -> DeviceCredential:
    return DeviceCredential(
        name=item.get("name", ""),
        secret=item.get("password"),
        profile=item.get("profile"),
        service=item.get("service"),
        comment=item.get("comment"),
        disabled=_is_true(item.get("disabled")),
    )


def _profile_from_item(item: dict) -> DeviceProfile:
    return DeviceProfile(
        name=item.get("name", ""),
        rate_limit=item.get("rate-limit"),
        session_timeout=item.get("session-timeout"),
        local_address=item.get("local-address"),
        remote_address=item.get("remote-address"),
        comment=item.get("comment"),
        disabled=_is_true(item.get("disabled")),
    )


def _session_from_item(item: dict) -> DeviceSession:
    return DeviceSession(
        name=item.get("name", ""),
        address=item.get("address"),
        local_address=item.get("local-address"),
        calling_station_id=item.get("caller-id") or item.get("calling-station-id"),
        uptime=item.get("uptime"),
        service=item.get("service"),
    )


def _profile_params(
    upload_bps: int | None,
    download_bps: int | None,
    session_timeout: int | None,
    comment: str | None,
    clear_zero: bool = False,
) -> dict[str, str]:
    """Device fields for a profile; None means leave the field alone.

    With ``clear_zero`` (updates) an explicit 0 resets the field to unlimited
    instead of being dropped.
    """
    params: dict[str, str] = {}
    if upload_bps is not None and download_bps is not None:
        if upload_bps > 0 and download_bps > 0:
            params["rate-limit"] = format_rate_limit(upload_bps, download_bps)
        elif clear_zero:
            params["rate-limit"] = (
                format_rate_limit(upload_bps, download_bps)
                if upload_bps or download_bps
                else ""
            )
    if session_timeout is not None:
        if session_timeout > 0:
            params["session-timeout"] = format_duration(session_timeout)
        elif clear_zero:
            params["session-timeout"] = format_duration(0)
    if comment is not None:
        params["comment"] = sanitize_comment(comment)
    return params


def _credential_params(
    username: str | None = None,
    secret: str | None = None,
    profile: str | None = None,
    comment: str | None = None,
) -> dict[str, str]:
    params: dict[str, str] = {}
    if username:
        params["name"] = username
    if secret:
        params["password"] = secret
    if profile:
        params["profile"] = profile
    if comment is not None:
        params["comment"] = sanitize_comment(comment)
    return params


class DeviceAdapter(ABC):
    protocol: DeviceProtocol

    def __init__(self, conn: DeviceConnection) -> None:
        self.conn = conn

    # ===== Credentials =====

    @abstractmethod
    def create_credential(
        self,
        username: str,
        secret: str,
        profile: str,
        comment: str | None = None,
        disabled: bool = False,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_credential(
        self,
        username: str,
        new_username: str | None = None,
        secret: str | None = None,
        profile: str | None = None,
        comment: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_credential(self, username: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def enable_credential(self, username: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def disable_credential(self, username: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_credentials(self) -> list[DeviceCredential]:
        raise NotImplementedError

    # ===== Profiles =====

    @abstractmethod
    def create_profile(
        self,
        name: str,
        upload_bps: int,
        download_bps: int,
        session_timeout: int = 0,
        comment: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_profile(
        self,
        name: str,
        new_name: str | None = None,
        upload_bps: int | None = None,
        download_bps: int | None = None,
        session_timeout: int | None = None,
        comment: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_profile(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_profiles(self) -> list[DeviceProfile]:
        raise NotImplementedError

    # ===== Sessions =====

    @abstractmethod
    def find_active_session(self, username: str) -> DeviceSession | None:
        raise NotImplementedError

    @abstractmethod
    def disconnect_session(self, username: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def test_connection(self) -> str:
        raise NotImplementedError


class RouterOsApiAdapter(DeviceAdapter):
    """Structured RouterOS API adapter. Preferred: comments come back verbatim."""

    protocol = DeviceProtocol.api

    @contextmanager
    def _api(self, step: str) -> Iterator:
        pool = routeros_api.RouterOsApiPool(
            host=self.conn.host,
            username=self.conn.username,
            password=self.conn.password or "",
            port=self.conn.port,
            use_ssl=self.conn.use_ssl,
            plaintext_login=True,
        )
        pool.socket_timeout = self.conn.command_timeout
        try:
            yield pool.get_api()
        except (
            routeros_exceptions.RouterOsApiConnectionError,
            socket.timeout,
            OSError,
        ) as exc:
            logger.warning("RouterOS %s unreachable during %s: %s", self.conn.host, step, exc)
            raise DeviceUnreachable(
                f"{step} failed: device unreachable ({exc})", host=self.conn.host
            ) from exc
        except routeros_exceptions.RouterOsApiError as exc:
            logger.warning("RouterOS %s rejected %s: %s", self.conn.host, step, exc)
            raise DeviceCommandFailed(
                f"{step} rejected by device: {exc}", host=self.conn.host
            ) from exc
        finally:
            try:
                pool.disconnect()
            except (routeros_exceptions.RouterOsApiError, OSError, AttributeError):
                logger.debug("RouterOS %s disconnect after %s failed", self.conn.host, step)

    def _find_id(self, resource, path: str, name: str) -> str:
        items = resource.get(name=name)
        if not items:
            raise DeviceObjectNotFound(
                f"{path} entry '{name}' not found on device", host=self.conn.host
            )
        return items[0].get("id") or items[0].get(".id")

    def create_credential(
        self, username, secret, profile, comment=None, disabled=False
    ) -> None:
        params = _credential_params(username, secret, profile, comment)
        params["service"] = "pppoe"
        if disabled:
            params["disabled"] = "yes"
        with self._api(f"add {SECRET_PATH}") as api:
            api.get_resource(SECRET_PATH).add(**params)
        logger.info("Created PPPoE secret %s on %s", username, self.conn.host)

    def update_credential(
        self, username, new_username=None, secret=None, profile=None, comment=None
    ) -> None:
        params = _credential_params(new_username, secret, profile, comment)
        with self._api(f"set {SECRET_PATH}") as api:
            resource = api.get_resource(SECRET_PATH)
            item_id = self._find_id(resource, SECRET_PATH, username)
            if params:
                resource.set(id=item_id, **params)
        logger.info("Updated PPPoE secret %s on %s", username, self.conn.host)

    def delete_credential(self, username: str) -> None:
        with self._api(f"remove {SECRET_PATH}") as api:
            resource = api.get_resource(SECRET_PATH)
            resource.remove(id=self._find_id(resource, SECRET_PATH, username))
        logger.info("Removed PPPoE secret %s from %s", username, self.conn.host)

    def _set_disabled(self, username: str, disabled: bool) -> None:
        action = "disable" if disabled else "enable"
        with self._api(f"{action} {SECRET_PATH}") as api:
            resource = api.get_resource(SECRET_PATH)
            item_id = self._find_id(resource, SECRET_PATH, username)
            resource.set(id=item_id, disabled="yes" if disabled else "no")
        logger.info("PPPoE secret %s %sd on %s", username, action, self.conn.host)

    def enable_credential(self, username: str) -> None:
        self._set_disabled(username, False)

    def disable_credential(self, username: str) -> None:
        self._set_disabled(username, True)

    def list_credentials(self) -> list[DeviceCredential]:
        with self._api(f"print {SECRET_PATH}") as api:
            items = api.get_resource(SECRET_PATH).get()
        return [_credential_from_item(item) for item in items]

    def create_profile(
        self, name, upload_bps, download_bps, session_timeout=0, comment=None
    ) -> None:
        params = _profile_params(upload_bps, download_bps, session_timeout, comment)
        with self._api(f"add {PROFILE_PATH}") as api:
            api.get_resource(PROFILE_PATH).add(name=name, **params)
        logger.info("Created PPP profile %s on %s", name, self.conn.host)

    def update_profile(
        self,
        name,
        new_name=None,
        upload_bps=None,
        download_bps=None,
        session_timeout=None,
        comment=None,
    ) -> None:
        params = _profile_params(
            upload_bps, download_bps, session_timeout, comment, clear_zero=True
        )
        if new_name:
            params["name"] = new_name
        with self._api(f"set {PROFILE_PATH}") as api:
            resource = api.get_resource(PROFILE_PATH)
            item_id = self._find_id(resource, PROFILE_PATH, name)
            if params:
                resource.set(id=item_id, **params)
        logger.info("Updated PPP profile %s on %s", name, self.conn.host)

    def delete_profile(self, name: str) -> None:
        with self._api(f"remove {PROFILE_PATH}") as api:
            resource = api.get_resource(PROFILE_PATH)
            resource.remove(id=self._find_id(resource, PROFILE_PATH, name))
        logger.info("Removed PPP profile %s from %s", name, self.conn.host)

    def list_profiles(self) -> list[DeviceProfile]:
        with self._api(f"print {PROFILE_PATH}") as api:
            items = api.get_resource(PROFILE_PATH).get()
        return [_profile_from_item(item) for item in items]

    def find_active_session(self, username: str) -> DeviceSession | None:
        with self._api(f"print {ACTIVE_PATH}") as api:
            items = api.get_resource(ACTIVE_PATH).get(name=username)
        if not items:
            return None
        return _session_from_item(items[0])

    def disconnect_session(self, username: str) -> bool:
        with self._api(f"remove {ACTIVE_PATH}") as api:
            resource = api.get_resource(ACTIVE_PATH)
            items = resource.get(name=username)
            for item in items:
                resource.remove(id=item.get("id") or item.get(".id"))
        if items:
            logger.info("Disconnected PPPoE session %s on %s", username, self.conn.host)
        return bool(items)

    def test_connection(self) -> str:
        with self._api(f"print {IDENTITY_PATH}") as api:
            items = api.get_resource(IDENTITY_PATH).get()
        return items[0].get("name", "") if items else ""


# ===== Line shell =====

_SHELL_ERROR_MARKERS = (
    "failure:",
    "syntax error",
    "no such item",
    "expected end of command",
    "input does not match",
    "bad command name",
    "invalid value",
)
_KV_RE = re.compile(r'([A-Za-z0-9.-]+)=("(?:[^"\\]|\\.)*"|\S*)')
_RECORD_START_RE = re.compile(r"^\s*(\d+)\s+(.*)$")


def _quote(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def _shell_args(params: dict[str, str]) -> str:
    return " ".join(f"{key}={_quote(value)}" for key, value in params.items())


def parse_detail_output(output: str) -> list[dict]:
    """Split ``print detail`` output into one dict per record.

    A record starts on a line beginning with its index. Flags between the
    index and the first field mark the record (``X`` is disabled); a
    ``;;;`` segment is the record comment.
    """
    records: list[dict] = []
    current: dict | None = None
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("Flags:", "Columns:")):
            continue
        match = _RECORD_START_RE.match(line)
        if match:
            current = {"disabled": "false"}
            records.append(current)
            rest = match.group(2)
            comment_at = rest.find(";;;")
            if comment_at >= 0:
                flags = rest[:comment_at]
                current["comment"] = rest[comment_at + 3:].strip()
                rest = ""
            else:
                first_field = _KV_RE.search(rest)
                flags = rest[: first_field.start()] if first_field else rest
            if "X" in flags.split():
                current["disabled"] = "true"
        elif current is None:
            continue
        else:
            rest = line
        for key, value in _KV_RE.findall(rest):
            current[key] = _unquote(value)
    return records


class SshShellAdapter(DeviceAdapter):
    """Line shell adapter over SSH. Output is parsed from ``print detail``."""

    protocol = DeviceProtocol.ssh

    @contextmanager
    def _shell(self, step: str) -> Iterator[Callable[[str], str]]:
        client = paramiko.SSHClient()
        if self.conn.verify_host_key:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.conn.host,
                port=self.conn.port,
                username=self.conn.username,
                password=self.conn.password,
                timeout=self.conn.connect_timeout,
                banner_timeout=self.conn.connect_timeout,
                auth_timeout=self.conn.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            yield self._executor(client, step)
        except paramiko.AuthenticationException as exc:
            logger.warning("SSH login rejected by %s during %s", self.conn.host, step)
            raise DeviceCommandFailed(
                f"{step} failed: authentication rejected", host=self.conn.host
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            logger.warning("SSH %s unreachable during %s: %s", self.conn.host, step, exc)
            raise DeviceUnreachable(
                f"{step} failed: device unreachable ({exc})", host=self.conn.host
            ) from exc
        finally:
            client.close()

    def _executor(self, client: paramiko.SSHClient, step: str) -> Callable[[str], str]:
        def run(command: str) -> str:
            _stdin, stdout, stderr = client.exec_command(
                command, timeout=self.conn.command_timeout
            )
            output = stdout.read().decode("utf-8", errors="replace").strip()
            error = stderr.read().decode("utf-8", errors="replace").strip()
            lowered = output.lower()
            if error or any(marker in lowered for marker in _SHELL_ERROR_MARKERS):
                raise DeviceCommandFailed(
                    f"{step} rejected by device: {error or output}", host=self.conn.host
                )
            return output

        return run

    def _require(self, run: Callable[[str], str], menu: str, name: str) -> None:
        output = run(f"{menu} print count-only where name={_quote(name)}")
        try:
            count = int(output.split()[0]) if output else 0
        except ValueError as exc:
            raise DeviceCommandFailed(
                f"Unexpected count output from {menu}: {output!r}", host=self.conn.host
            ) from exc
        if count == 0:
            raise DeviceObjectNotFound(
                f"{menu} entry '{name}' not found on device", host=self.conn.host
            )

    def create_credential(
        self, username, secret, profile, comment=None, disabled=False
    ) -> None:
        params = _credential_params(username, secret, profile, comment)
        params["service"] = "pppoe"
        if disabled:
            params["disabled"] = "yes"
        with self._shell("/ppp secret add") as run:
            run(f"/ppp secret add {_shell_args(params)}")
        logger.info("Created PPPoE secret %s on %s", username, self.conn.host)

    def update_credential(
        self, username, new_username=None, secret=None, profile=None, comment=None
    ) -> None:
        params = _credential_params(new_username, secret, profile, comment)
        with self._shell("/ppp secret set") as run:
            self._require(run, "/ppp secret", username)
            if params:
                run(f"/ppp secret set [find name={_quote(username)}] {_shell_args(params)}")
        logger.info("Updated PPPoE secret %s on %s", username, self.conn.host)

    def delete_credential(self, username: str) -> None:
        with self._shell("/ppp secret remove") as run:
            self._require(run, "/ppp secret", username)
            run(f"/ppp secret remove [find name={_quote(username)}]")
        logger.info("Removed PPPoE secret %s from %s", username, self.conn.host)

    def _toggle(self, username: str, action: str) -> None:
        with self._shell(f"/ppp secret {action}") as run:
            self._require(run, "/ppp secret", username)
            run(f"/ppp secret {action} [find name={_quote(username)}]")
        logger.info("PPPoE secret %s %sd on %s", username, action, self.conn.host)

    def enable_credential(self, username: str) -> None:
        self._toggle(username, "enable")

    def disable_credential(self, username: str) -> None:
        self._toggle(username, "disable")

    def list_credentials(self) -> list[DeviceCredential]:
        with self._shell("/ppp secret print") as run:
            output = run("/ppp secret print detail without-paging")
        return [_credential_from_item(item) for item in parse_detail_output(output)]

    def create_profile(
        self, name, upload_bps, download_bps, session_timeout=0, comment=None
    ) -> None:
        params = {"name": name}
        params.update(_profile_params(upload_bps, download_bps, session_timeout, comment))
        with self._shell("/ppp profile add") as run:
            run(f"/ppp profile add {_shell_args(params)}")
        logger.info("Created PPP profile %s on %s", name, self.conn.host)

    def update_profile(
        self,
        name,
        new_name=None,
        upload_bps=None,
        download_bps=None,
        session_timeout=None,
        comment=None,
    ) -> None:
        params = _profile_params(
            upload_bps, download_bps, session_timeout, comment, clear_zero=True
        )
        if new_name:
            params["name"] = new_name
        with self._shell("/ppp profile set") as run:
            self._require(run, "/ppp profile", name)
            if params:
                run(f"/ppp profile set [find name={_quote(name)}] {_shell_args(params)}")
        logger.info("Updated PPP profile %s on %s", name, self.conn.host)

    def delete_profile(self, name: str) -> None:
        with self._shell("/ppp profile remove") as run:
            self._require(run, "/ppp profile", name)
            run(f"/ppp profile remove [find name={_quote(name)}]")
        logger.info("Removed PPP profile %s from %s", name, self.conn.host)

    def list_profiles(self) -> list[DeviceProfile]:
        with self._shell("/ppp profile print") as run:
            output = run("/ppp profile print detail without-paging")
        return [_profile_from_item(item) for item in parse_detail_output(output)]

    def find_active_session(self, username: str) -> DeviceSession | None:
        with self._shell("/ppp active print") as run:
            output = run(f"/ppp active print detail where name={_quote(username)}")
        records = parse_detail_output(output)
        if not records:
            return None
        return _session_from_item(records[0])

    def disconnect_session(self, username: str) -> bool:
        with self._shell("/ppp active remove") as run:
            try:
                self._require(run, "/ppp active", username)
            except DeviceObjectNotFound:
                return False
            run(f"/ppp active remove [find name={_quote(username)}]")
        logger.info("Disconnected PPPoE session %s on %s", username, self.conn.host)
        return True

    def test_connection(self) -> str:
        with self._shell("/system identity print") as run:
            output = run("/system identity print")
        for line in output.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "name":
                return value.strip()
        return output


# ===== Registry =====

_ADAPTERS: dict[DeviceProtocol, type[DeviceAdapter]] = {}


def register_adapter(adapter_cls: type[DeviceAdapter]) -> None:
    _ADAPTERS[adapter_cls.protocol] = adapter_cls


def register_default_adapters() -> None:
    register_adapter(RouterOsApiAdapter)
    register_adapter(SshShellAdapter)


def connection_for(device: Device) -> DeviceConnection:
    protocol = device.protocol or DeviceProtocol.api
    if protocol == DeviceProtocol.ssh:
        port = device.shell_port or settings.device_ssh_port
    else:
        port = device.control_port or settings.device_api_port
    return DeviceConnection(
        host=device.host,
        port=int(port),
        username=device.admin_user,
        password=device.admin_secret,
        use_ssl=bool(device.use_ssl),
        verify_host_key=bool(device.verify_host_key),
        connect_timeout=settings.device_connect_timeout,
        command_timeout=settings.device_command_timeout,
    )


def get_adapter(device: Device) -> DeviceAdapter:
    if not _ADAPTERS:
        register_default_adapters()
    protocol = device.protocol or DeviceProtocol.api
    adapter_cls = _ADAPTERS.get(protocol)
    if adapter_cls is None:
        raise DeviceCommandFailed(
            f"No adapter registered for protocol {protocol.value}", host=device.host
        )
    return adapter_cls(connection_for(device))
