import logging
import re
from pydantic import BaseModel, ConfigDict
from .config import IngressConfigError, PathType, RoutingRule

logger = logging.getLogger(__name__)

GROUP_REF = re.compile(r'\$(\d+)')
TRAILING_GROUP_REF = re.compile(r'\$(\d+)$')
REGEX_CHARS = set('.^$*+?()[]{}|\\')


class RouteMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: RoutingRule
    forwarded_path: str
    upstream: str
    # leading part of the request path a rewrite removed, e.g. '/pricing-service'
    stripped_prefix: str | None = None


class CompiledRule:
    """
    A RoutingRule ready for matching.

    Regex paths are compiled and rewrite templates checked up front so that a bad
    rule fails when the table is loaded, not when a request hits it.
    """
    def __init__(self, rule: RoutingRule):
        self.rule = rule
        self.pattern: re.Pattern[str] | None = None
        self.scope: str | None = None

        if rule.is_regex:
            try:
                self.pattern = re.compile(rule.path, re.IGNORECASE)    # nginx ~*
            except re.error as exc:
                raise IngressConfigError(f'{rule.ingress}: invalid path regex {rule.path!r}: {exc}') from exc
            self.scope = claimed_segment(rule.path)
        elif not rule.path.startswith('/'):
            raise IngressConfigError(f'{rule.ingress}: path {rule.path!r} must start with "/"')

        if rule.rewrite_target is not None and not rule.is_regex:
            raise IngressConfigError(f'{rule.ingress}: rewrite target on {rule.path_type.value} path {rule.path!r}')
        if rule.rewrite_target is not None:
            check_rewrite_target(rule, self.pattern.groups if self.pattern else 0)

    def match(self, path: str) -> str | None:
        """Return the forwarded path when the rule matches, else None."""
        rule = self.rule
        if rule.path_type is PathType.EXACT:
            return path if path == rule.path else None

        if rule.path_type is PathType.PREFIX:
            return path if prefix_matches(rule.path, path) else None

        m = self.pattern.match(path)
        if m is None:
            return None
        if rule.rewrite_target is None:
            return path
        return rewrite(rule.rewrite_target, m)


def prefix_matches(prefix: str, path: str) -> bool:
    # element-wise: /foo matches /foo and /foo/bar, never /foobar
    prefix = prefix.rstrip('/')
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + '/')


def claimed_segment(pattern: str) -> str | None:
    """
    First path segment of a regex path when it is spelled out literally.

    '/pricing-service/api(/|$)(.*)' claims '/pricing-service'; '/api(/|$)' and
    '/v[0-9]+/users' claim nothing.
    """
    literal = ''
    for ch in pattern.removeprefix('^'):
        if ch in REGEX_CHARS:
            break
        literal += ch

    if not literal.startswith('/'):
        return None
    segment, sep, _ = literal[1:].partition('/')
    if not segment or not sep:
        return None
    return '/' + segment.lower()


def check_rewrite_target(rule: RoutingRule, groups: int) -> None:
    template = rule.rewrite_target
    if not template:
        raise IngressConfigError(f'{rule.ingress}: empty rewrite target')
    if '$' in GROUP_REF.sub('', template):
        raise IngressConfigError(f'{rule.ingress}: malformed rewrite target {template!r}')
    for ref in GROUP_REF.findall(template):
        if int(ref) > groups:
            raise IngressConfigError(
                f'{rule.ingress}: rewrite target {template!r} references ${ref} '
                f'but {rule.path!r} has {groups} group(s)'
            )


def rewrite(template: str, m: re.Match[str]) -> str:
    result = GROUP_REF.sub(lambda ref: m.group(int(ref.group(1))) or '', template)

    # /pricing-service/api matches with every group empty: forward /api, not /api/
    trailing = TRAILING_GROUP_REF.search(template)
    if trailing and not any(m.groups()) and not m.group(int(trailing.group(1))) \
            and len(result) > 1 and result.endswith('/'):
        result = result[:-1]
    return result or '/'


def stripped_prefix(path: str, forwarded: str) -> str | None:
    """Part of the request path in front of what the rewrite kept: '/svc/api/x' -> '/api/x' strips '/svc'."""
    common = 0
    while common < min(len(path), len(forwarded)) and path[-1 - common] == forwarded[-1 - common]:
        common += 1
    return path[:len(path) - common].rstrip('/') or None


def host_matches(pattern: str, host: str) -> bool:
    if pattern.startswith('*.'):
        label, _, rest = host.partition('.')
        return bool(label) and rest == pattern[2:]
    return host == pattern


class RoutingTable:
    """
    Effective rule set of all applied Ingress resources.

    Resources are keyed by 'namespace/name', so applying the same resource twice
    replaces it in place and keeps the original evaluation order.
    """
    def __init__(self, service_domain: str = '', service_overrides: dict[str, str] | None = None):
        self.service_domain = service_domain
        self.service_overrides = dict(service_overrides or {})
        self._resources: dict[str, list[CompiledRule]] = {}

    def apply(self, name: str, rules: list[RoutingRule]) -> None:
        """Install or replace the rules of one Ingress resource."""
        compiled = [CompiledRule(rule) for rule in rules]
        verb = 'Reapplied' if name in self._resources else 'Applied'
        self._resources[name] = compiled
        logger.info('%s ingress %s (%d rules)', verb, name, len(compiled))

    def delete(self, name: str) -> None:
        self._resources.pop(name, None)

    @property
    def rules(self) -> list[RoutingRule]:
        return [c.rule for compiled in self._resources.values() for c in compiled]

    @property
    def rate_limited(self) -> bool:
        return any(rule.limit_rps for rule in self.rules)

    def upstream(self, rule: RoutingRule) -> str:
        """Base URL of the ClusterIP service behind a rule."""
        if rule.backend_service in self.service_overrides:
            return self.service_overrides[rule.backend_service]
        host = rule.backend_service
        if self.service_domain:
            host = f'{host}.{self.service_domain}'
        return f'http://{host}:{rule.backend_port}'

    def _server(self, host: str | None) -> list[CompiledRule]:
        # one server block per request, like nginx: exact host, wildcard host, then default
        compiled = [c for rules in self._resources.values() for c in rules]
        if host:
            host = host.split(':', 1)[0].lower()
            exact = [c for c in compiled if c.rule.host and c.rule.host.lower() == host]
            if exact:
                return exact
            wildcard = [c for c in compiled
                        if c.rule.host and host_matches(c.rule.host.lower(), host) and c.rule.host.startswith('*.')]
            if wildcard:
                return wildcard
        return [c for c in compiled if not c.rule.host]

    def match(self, path: str, host: str | None = None) -> RouteMatch | None:
        candidates = self._server(host)

        for c in candidates:
            if c.rule.path_type is PathType.EXACT and c.match(path) is not None:
                return self._found(c, path, path)

        for c in candidates:
            if c.rule.is_regex:
                forwarded = c.match(path)
                if forwarded is not None:
                    return self._found(c, path, forwarded)

        prefixes = [c for c in candidates if c.rule.path_type is PathType.PREFIX and c.match(path) is not None]

        # a claimed segment only reaches Prefix rules declared inside it, never the catch-all
        segment = '/' + path.lstrip('/').split('/', 1)[0].lower()
        if any(c.scope == segment for c in candidates):
            prefixes = [c for c in prefixes if prefix_matches(segment, c.rule.path.rstrip('/').lower())]
            if not prefixes:
                logger.debug('Path %s is inside claimed segment %s', path, segment)
                return None
        if not prefixes:
            return None
        best = max(prefixes, key=lambda c: len(c.rule.path.rstrip('/')))
        return self._found(best, path, path)

    def _found(self, compiled: CompiledRule, path: str, forwarded: str) -> RouteMatch:
        rule = compiled.rule
        logger.debug('Matched %s -> %s:%d%s', rule.path, rule.backend_service, rule.backend_port, forwarded)
        prefix = stripped_prefix(path, forwarded) if rule.rewrite_target is not None else None
        return RouteMatch(rule=rule, forwarded_path=forwarded, upstream=self.upstream(rule), stripped_prefix=prefix)


def build_table(rules: list[RoutingRule],
                service_domain: str = '',
                service_overrides: dict[str, str] | None = None) -> RoutingTable:
    """Build a table from a flat rule list, grouping rules by their Ingress resource."""
    table = RoutingTable(service_domain, service_overrides)
    grouped: dict[str, list[RoutingRule]] = {}
    for rule in rules:
        grouped.setdefault(rule.ingress, []).append(rule)
    for name, group in grouped.items():
        table.apply(name, group)
    return table

