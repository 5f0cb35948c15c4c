"""HAProxy directive allow-lists and validation.

User supplied frontend/backend/listen lines are only copied into the
generated config when they start with a keyword HAProxy accepts in that
section. Anything else is dropped with a warning; a bad directive never
stops config generation.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping, Optional

from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import ServiceDirectives

# keyword lists from the HAProxy 1.5 and 1.6 configuration manuals
SECTION_FIELDS: dict[str, tuple[str, ...]] = {
    "backend": (
        "acl",
        "appsession",
        "balance",
        "bind-process",
        "block",
        "compression",
        "contimeout",
        "cookie",
        "default-server",
        "description",
        "disabled",
        "dispatch",
        "email-alert from",
        "email-alert level",
        "email-alert mailers",
        "email-alert myhostname",
        "email-alert to",
        "enabled",
        "errorfile",
        "errorloc",
        "errorloc302",
        "errorloc303",
        "force-persist",
        "fullconn",
        "grace",
        "hash-type",
        "http-check disable-on-404",
        "http-check expect",
        "http-check send-state",
        "http-request",
        "http-response",
        "http-send-name-header",
        "http-reuse",
        "http-send-name-header",
        "id",
        "ignore-persist",
        "load-server-state-from-file",
        "log",
        "log-tag",
        "max-keep-alive-queue",
        "mode",
        "no log",
        "no option abortonclose",
        "no option accept-invalid-http-response",
        "no option allbackups",
        "no option allredisp",
        "no option checkcache",
        "no option forceclose",
        "no option forwardfor",
        "no option http-buffer-request",
        "no option http-keep-alive",
        "no option http-no-delay",
        "no option http-pretend-keepalive",
        "no option http-server-close",
        "no option http-tunnel",
        "no option httpchk",
        "no option httpclose",
        "no option httplog",
        "no option http_proxy",
        "no option independent-streams",
        "no option lb-agent-chk",
        "no option ldap-check",
        "no option external-check",
        "no option log-health-checks",
        "no option mysql-check",
        "no option pgsql-check",
        "no option nolinger",
        "no option originalto",
        "no option persist",
        "no option pgsql-check",
        "no option prefer-last-server",
        "no option redispatch",
        "no option redis-check",
        "no option smtpchk",
        "no option splice-auto",
        "no option splice-request",
        "no option splice-response",
        "no option srvtcpka",
        "no option ssl-hello-chk",
        "no option tcp-check",
        "no option tcp-smart-connect",
        "no option tcpka",
        "no option tcplog",
        "no option transparent",
        "option abortonclose",
        "option accept-invalid-http-response",
        "option allbackups",
        "option allredisp",
        "option checkcache",
        "option forceclose",
        "option forwardfor",
        "option http-buffer-request",
        "option http-keep-alive",
        "option http-no-delay",
        "option http-pretend-keepalive",
        "option http-server-close",
        "option http-tunnel",
        "option httpchk",
        "option httpclose",
        "option httplog",
        "option http_proxy",
        "option independent-streams",
        "option lb-agent-chk",
        "option ldap-check",
        "option external-check",
        "option log-health-checks",
        "option mysql-check",
        "option pgsql-check",
        "option nolinger",
        "option originalto",
        "option persist",
        "option pgsql-check",
        "option prefer-last-server",
        "option redispatch",
        "option redis-check",
        "option smtpchk",
        "option splice-auto",
        "option splice-request",
        "option splice-response",
        "option srvtcpka",
        "option ssl-hello-chk",
        "option tcp-check",
        "option tcp-smart-connect",
        "option tcpka",
        "option tcplog",
        "option transparent",
        "external-check command",
        "external-check path",
        "persist rdp-cookie",
        "redirect",
        "redisp",
        "redispatch",
        "reqadd",
        "reqallow",
        "reqdel",
        "reqdeny",
        "reqiallow",
        "reqidel",
        "reqideny",
        "reqipass",
        "reqirep",
        "reqisetbe",
        "reqitarpit",
        "reqpass",
        "reqrep",
        "reqsetbe",
        "reqtarpit",
        "retries",
        "rspadd",
        "rspdel",
        "rspdeny",
        "rspidel",
        "rspideny",
        "rspirep",
        "rsprep",
        "server",
        "server-state-file-name",
        "source",
        "srvtimeout",
        "stats admin",
        "stats auth",
        "stats enable",
        "stats hide-version",
        "stats http-request",
        "stats realm",
        "stats refresh",
        "stats scope",
        "stats show-desc",
        "stats show-legends",
        "stats show-node",
        "stats uri",
        "stick match",
        "stick on",
        "stick store-request",
        "stick store-response",
        "stick-table",
        "tcp-check connect",
        "tcp-check expect",
        "tcp-check send",
        "tcp-check send-binary",
        "tcp-request content",
        "tcp-request inspect-delay",
        "tcp-response content",
        "tcp-response inspect-delay",
        "timeout check",
        "timeout connect",
        "timeout contimeout",
        "timeout http-keep-alive",
        "timeout http-request",
        "timeout queue",
        "timeout server",
        "timeout server-fin",
        "timeout srvtimeout",
        "timeout tarpit",
        "timeout tunnel",
        "transparent",
        "use-server"
    ),
    "defaults": (
        "backlog",
        "balance",
        "bind-process",
        "clitimeout",
        "compression",
        "contimeout",
        "cookie",
        "default-server",
        "default_backend",
        "disabled",
        "email-alert from",
        "email-alert level",
        "email-alert mailers",
        "email-alert myhostname",
        "email-alert to",
        "enabled",
        "errorfile",
        "errorloc",
        "errorloc302",
        "errorloc303",
        "fullconn",
        "grace",
        "hash-type",
        "http-check disable-on-404",
        "http-check send-state",
        "http-reuse",
        "load-server-state-from-file",
        "log",
        "log-format",
        "log-format-sd",
        "log-tag",
        "max-keep-alive-queue",
        "maxconn",
        "mode",
        "monitor-net",
        "monitor-uri",
        "no log",
        "no option abortonclose",
        "no option accept-invalid-http-request",
        "no option accept-invalid-http-response",
        "no option allbackups",
        "no option allredisp",
        "no option checkcache",
        "no option clitcpka",
        "no option contstats",
        "no option dontlog-normal",
        "no option dontlognull",
        "no option forceclose",
        "no option forwardfor",
        "no option http-buffer-request",
        "no option http-ignore-probes",
        "no option http-keep-alive",
        "no option http-no-delay",
        "no option http-pretend-keepalive",
        "no option http-server-close",
        "no option http-tunnel",
        "no option http-use-proxy-header",
        "no option httpchk",
        "no option httpclose",
        "no option httplog",
        "no option http_proxy",
        "no option independent-streams",
        "no option lb-agent-chk",
        "no option ldap-check",
        "no option external-check",
        "no option log-health-checks",
        "no option log-separate-errors",
        "no option logasap",
        "no option mysql-check",
        "no option pgsql-check",
        "no option nolinger",
        "no option originalto",
        "no option persist",
        "no option pgsql-check",
        "no option prefer-last-server",
        "no option redispatch",
        "no option redis-check",
        "no option smtpchk",
        "no option socket-stats",
        "no option splice-auto",
        "no option splice-request",
        "no option splice-response",
        "no option srvtcpka",
        "no option ssl-hello-chk",
        "no option tcp-check",
        "no option tcp-smart-accept",
        "no option tcp-smart-connect",
        "no option tcpka",
        "no option tcplog",
        "no option transparent",
        "option abortonclose",
        "option accept-invalid-http-request",
        "option accept-invalid-http-response",
        "option allbackups",
        "option allredisp",
        "option checkcache",
        "option clitcpka",
        "option contstats",
        "option dontlog-normal",
        "option dontlognull",
        "option forceclose",
        "option forwardfor",
        "option http-buffer-request",
        "option http-ignore-probes",
        "option http-keep-alive",
        "option http-no-delay",
        "option http-pretend-keepalive",
        "option http-server-close",
        "option http-tunnel",
        "option http-use-proxy-header",
        "option httpchk",
        "option httpclose",
        "option httplog",
        "option http_proxy",
        "option independent-streams",
        "option lb-agent-chk",
        "option ldap-check",
        "option external-check",
        "option log-health-checks",
        "option log-separate-errors",
        "option logasap",
        "option mysql-check",
        "option pgsql-check",
        "option nolinger",
        "option originalto",
        "option persist",
        "option pgsql-check",
        "option prefer-last-server",
        "option redispatch",
        "option redis-check",
        "option smtpchk",
        "option socket-stats",
        "option splice-auto",
        "option splice-request",
        "option splice-response",
        "option srvtcpka",
        "option ssl-hello-chk",
        "option tcp-check",
        "option tcp-smart-accept",
        "option tcp-smart-connect",
        "option tcpka",
        "option tcplog",
        "option transparent",
        "external-check command",
        "external-check path",
        "persist rdp-cookie",
        "rate-limit sessions",
        "redisp",
        "redispatch",
        "retries",
        "server-state-file-name",
        "source",
        "srvtimeout",
        "stats auth",
        "stats enable",
        "stats hide-version",
        "stats realm",
        "stats refresh",
        "stats scope",
        "stats show-desc",
        "stats show-legends",
        "stats show-node",
        "stats uri",
        "timeout check",
        "timeout client",
        "timeout client-fin",
        "timeout clitimeout",
        "timeout connect",
        "timeout contimeout",
        "timeout http-keep-alive",
        "timeout http-request",
        "timeout queue",
        "timeout server",
        "timeout server-fin",
        "timeout srvtimeout",
        "timeout tarpit",
        "timeout tunnel",
        "transparent",
        "unique-id-format",
        "unique-id-header"
    ),
    "frontend": (
        "acl",
        "backlog",
        "bind",
        "bind-process",
        "block",
        "capture cookie",
        "capture request header",
        "capture response header",
        "clitimeout",
        "compression",
        "declare capture",
        "default_backend",
        "description",
        "disabled",
        "email-alert from",
        "email-alert level",
        "email-alert mailers",
        "email-alert myhostname",
        "email-alert to",
        "enabled",
        "errorfile",
        "errorloc",
        "errorloc302",
        "errorloc303",
        "force-persist",
        "grace",
        "http-request",
        "http-response",
        "id",
        "ignore-persist",
        "log",
        "log-format",
        "log-format-sd",
        "log-tag",
        "maxconn",
        "mode",
        "monitor fail",
        "monitor-net",
        "monitor-uri",
        "no log",
        "no option accept-invalid-http-request",
        "no option clitcpka",
        "no option contstats",
        "no option dontlog-normal",
        "no option dontlognull",
        "no option forceclose",
        "no option forwardfor",
        "no option http-buffer-request",
        "no option http-ignore-probes",
        "no option http-keep-alive",
        "no option http-no-delay",
        "no option http-pretend-keepalive",
        "no option http-server-close",
        "no option http-tunnel",
        "no option http-use-proxy-header",
        "no option httpclose",
        "no option httplog",
        "no option http_proxy",
        "no option independent-streams",
        "no option log-separate-errors",
        "no option logasap",
        "no option nolinger",
        "no option originalto",
        "no option socket-stats",
        "no option splice-auto",
        "no option splice-request",
        "no option splice-response",
        "no option tcp-smart-accept",
        "no option tcpka",
        "no option tcplog",
        "option accept-invalid-http-request",
        "option clitcpka",
        "option contstats",
        "option dontlog-normal",
        "option dontlognull",
        "option forceclose",
        "option forwardfor",
        "option http-buffer-request",
        "option http-ignore-probes",
        "option http-keep-alive",
        "option http-no-delay",
        "option http-pretend-keepalive",
        "option http-server-close",
        "option http-tunnel",
        "option http-use-proxy-header",
        "option httpclose",
        "option httplog",
        "option http_proxy",
        "option independent-streams",
        "option log-separate-errors",
        "option logasap",
        "option nolinger",
        "option originalto",
        "option socket-stats",
        "option splice-auto",
        "option splice-request",
        "option splice-response",
        "option tcp-smart-accept",
        "option tcpka",
        "option tcplog",
        "rate-limit sessions",
        "redirect",
        "reqadd",
        "reqallow",
        "reqdel",
        "reqdeny",
        "reqiallow",
        "reqidel",
        "reqideny",
        "reqipass",
        "reqirep",
        "reqisetbe",
        "reqitarpit",
        "reqpass",
        "reqrep",
        "reqsetbe",
        "reqtarpit",
        "rspadd",
        "rspdel",
        "rspdeny",
        "rspidel",
        "rspideny",
        "rspirep",
        "rsprep",
        "stats admin",
        "stats auth",
        "stats enable",
        "stats hide-version",
        "stats http-request",
        "stats realm",
        "stats refresh",
        "stats scope",
        "stats show-desc",
        "stats show-legends",
        "stats show-node",
        "stats uri",
        "tcp-request connection",
        "tcp-request content",
        "tcp-request inspect-delay",
        "timeout client",
        "timeout client-fin",
        "timeout clitimeout",
        "timeout http-keep-alive",
        "timeout http-request",
        "timeout tarpit",
        "unique-id-format",
        "unique-id-header",
        "use_backend"
    ),
    "listen": (
        "acl",
        "appsession",
        "backlog",
        "balance",
        "bind",
        "bind-process",
        "block",
        "capture cookie",
        "capture request header",
        "capture response header",
        "clitimeout",
        "compression",
        "contimeout",
        "cookie",
        "declare capture",
        "default-server",
        "default_backend",
        "description",
        "disabled",
        "dispatch",
        "email-alert from",
        "email-alert level",
        "email-alert mailers",
        "email-alert myhostname",
        "email-alert to",
        "enabled",
        "errorfile",
        "errorloc",
        "errorloc302",
        "errorloc303",
        "force-persist",
        "fullconn",
        "grace",
        "hash-type",
        "http-check disable-on-404",
        "http-check expect",
        "http-check send-state",
        "http-request",
        "http-response",
        "http-send-name-header",
        "http-reuse",
        "http-send-name-header",
        "id",
        "ignore-persist",
        "load-server-state-from-file",
        "log",
        "log-format",
        "log-format-sd",
        "log-tag",
        "max-keep-alive-queue",
        "maxconn",
        "mode",
        "monitor fail",
        "monitor-net",
        "monitor-uri",
        "no log",
        "no option abortonclose",
        "no option accept-invalid-http-request",
        "no option accept-invalid-http-response",
        "no option allbackups",
        "no option allredisp",
        "no option checkcache",
        "no option clitcpka",
        "no option contstats",
        "no option dontlog-normal",
        "no option dontlognull",
        "no option forceclose",
        "no option forwardfor",
        "no option http-buffer-request",
        "no option http-ignore-probes",
        "no option http-keep-alive",
        "no option http-no-delay",
        "no option http-pretend-keepalive",
        "no option http-server-close",
        "no option http-tunnel",
        "no option http-use-proxy-header",
        "no option httpchk",
        "no option httpclose",
        "no option httplog",
        "no option http_proxy",
        "no option independent-streams",
        "no option lb-agent-chk",
        "no option ldap-check",
        "no option external-check",
        "no option log-health-checks",
        "no option log-separate-errors",
        "no option logasap",
        "no option mysql-check",
        "no option pgsql-check",
        "no option nolinger",
        "no option originalto",
        "no option persist",
        "no option pgsql-check",
        "no option prefer-last-server",
        "no option redispatch",
        "no option redis-check",
        "no option smtpchk",
        "no option socket-stats",
        "no option splice-auto",
        "no option splice-request",
        "no option splice-response",
        "no option srvtcpka",
        "no option ssl-hello-chk",
        "no option tcp-check",
        "no option tcp-smart-accept",
        "no option tcp-smart-connect",
        "no option tcpka",
        "no option tcplog",
        "no option transparent",
        "option abortonclose",
        "option accept-invalid-http-request",
        "option accept-invalid-http-response",
        "option allbackups",
        "option allredisp",
        "option checkcache",
        "option clitcpka",
        "option contstats",
        "option dontlog-normal",
        "option dontlognull",
        "option forceclose",
        "option forwardfor",
        "option http-buffer-request",
        "option http-ignore-probes",
        "option http-keep-alive",
        "option http-no-delay",
        "option http-pretend-keepalive",
        "option http-server-close",
        "option http-tunnel",
        "option http-use-proxy-header",
        "option httpchk",
        "option httpclose",
        "option httplog",
        "option http_proxy",
        "option independent-streams",
        "option lb-agent-chk",
        "option ldap-check",
        "option external-check",
        "option log-health-checks",
        "option log-separate-errors",
        "option logasap",
        "option mysql-check",
        "option pgsql-check",
        "option nolinger",
        "option originalto",
        "option persist",
        "option pgsql-check",
        "option prefer-last-server",
        "option redispatch",
        "option redis-check",
        "option smtpchk",
        "option socket-stats",
        "option splice-auto",
        "option splice-request",
        "option splice-response",
        "option srvtcpka",
        "option ssl-hello-chk",
        "option tcp-check",
        "option tcp-smart-accept",
        "option tcp-smart-connect",
        "option tcpka",
        "option tcplog",
        "option transparent",
        "external-check command",
        "external-check path",
        "persist rdp-cookie",
        "rate-limit sessions",
        "redirect",
        "redisp",
        "redispatch",
        "reqadd",
        "reqallow",
        "reqdel",
        "reqdeny",
        "reqiallow",
        "reqidel",
        "reqideny",
        "reqipass",
        "reqirep",
        "reqisetbe",
        "reqitarpit",
        "reqpass",
        "reqrep",
        "reqsetbe",
        "reqtarpit",
        "retries",
        "rspadd",
        "rspdel",
        "rspdeny",
        "rspidel",
        "rspideny",
        "rspirep",
        "rsprep",
        "server",
        "server-state-file-name",
        "source",
        "srvtimeout",
        "stats admin",
        "stats auth",
        "stats enable",
        "stats hide-version",
        "stats http-request",
        "stats realm",
        "stats refresh",
        "stats scope",
        "stats show-desc",
        "stats show-legends",
        "stats show-node",
        "stats uri",
        "stick match",
        "stick on",
        "stick store-request",
        "stick store-response",
        "stick-table",
        "tcp-check connect",
        "tcp-check expect",
        "tcp-check send",
        "tcp-check send-binary",
        "tcp-request connection",
        "tcp-request content",
        "tcp-request inspect-delay",
        "tcp-response content",
        "tcp-response inspect-delay",
        "timeout check",
        "timeout client",
        "timeout client-fin",
        "timeout clitimeout",
        "timeout connect",
        "timeout contimeout",
        "timeout http-keep-alive",
        "timeout http-request",
        "timeout queue",
        "timeout server",
        "timeout server-fin",
        "timeout srvtimeout",
        "timeout tarpit",
        "timeout tunnel",
        "transparent",
        "unique-id-format",
        "unique-id-header",
        "use_backend",
        "use-server"
    ),
}

_WHITESPACE = re.compile(r"\s+")


def normalize(line: str) -> str:
    """Collapse whitespace and lower-case a directive for prefix matching."""
    return _WHITESPACE.sub(" ", line.strip()).lower()


def is_allowed(line: str, section: str) -> bool:
    try:
        fields = SECTION_FIELDS[section]
    except KeyError:
        raise ValueError(f"unknown haproxy section kind: {section!r}") from None
    parsed = normalize(line)
    return any(parsed.startswith(field) for field in fields)


def validate(
    lines: Iterable[str],
    section: str,
    service_name: str,
    ctx: Optional[SyncContext] = None,
) -> list[str]:
    """Return the lines of ``lines`` that are valid in ``section``.

    Rejected lines are logged (and counted when a context is given) and
    dropped.
    """
    log = ctx.log if ctx is not None else logging.getLogger("lb_sync")
    accepted = []
    for line in lines:
        if is_allowed(line, section):
            accepted.append(line)
            continue
        log.warning(
            "service %s contains invalid %s setting: '%s', discarding",
            service_name, section, line,
        )
        if ctx is not None:
            ctx.metrics.invalid_directives.labels(section=section).inc()
    return accepted


def parse_service_directives(
    service_name: str,
    generator_config: Mapping[str, Any],
    ctx: Optional[SyncContext] = None,
) -> ServiceDirectives:
    """Split a service's frontend/backend/listen buckets into valid directives.

    ``listen`` lines are tested against both the frontend and the backend
    allow-lists and end up in every section that accepts them. A listen
    line neither accepts is dropped with a warning.
    """
    listen = list(generator_config.get("listen") or [])
    log = ctx.log if ctx is not None else logging.getLogger("lb_sync")
    for line in listen:
        if not (is_allowed(line, "frontend") or is_allowed(line, "backend")):
            log.warning("service %s contains invalid listen setting: '%s', discarding", service_name, line)
            if ctx is not None:
                ctx.metrics.invalid_directives.labels(section="listen").inc()
    sections = {}
    for section in ("frontend", "backend"):
        lines = list(generator_config.get(section) or [])
        lines.extend(line for line in listen if is_allowed(line, section))
        sections[section] = tuple(validate(lines, section, service_name, ctx))
    return ServiceDirectives(frontend=sections["frontend"], backend=sections["backend"])
