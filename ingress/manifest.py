"""
Routing rules from Kubernetes Ingress manifests.

Only `networking.k8s.io/v1` Ingress documents are read; every other kind in the
same files (Deployments, Services, ConfigMaps, ...) is skipped. The ingress-nginx
annotations that change routing are honoured:

    nginx.ingress.kubernetes.io/rewrite-target   applies to every path of the resource
                                                 and turns them all into regexes
    nginx.ingress.kubernetes.io/use-regex        regex paths without a rewrite
    nginx.ingress.kubernetes.io/limit-rps        per-client requests per second
    nginx.ingress.kubernetes.io/limit-burst-multiplier
"""
import logging
from pathlib import Path
from typing import Any, Iterable
import yaml
from pydantic import ValidationError
from .config import IngressConfigError, PathType, RoutingRule, Settings
from .routing import RoutingTable, build_table

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = 'nginx.ingress.kubernetes.io/'
REWRITE_TARGET = ANNOTATION_PREFIX + 'rewrite-target'
USE_REGEX = ANNOTATION_PREFIX + 'use-regex'
LIMIT_RPS = ANNOTATION_PREFIX + 'limit-rps'
LIMIT_BURST_MULTIPLIER = ANNOTATION_PREFIX + 'limit-burst-multiplier'


def manifest_files(paths: Iterable[str | Path]) -> list[Path]:
    files = []
    for path in map(Path, paths):
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.suffix in ('.yaml', '.yml')))
        elif path.is_file():
            files.append(path)
        else:
            raise IngressConfigError(f'Manifest not found: {path}')
    return files


def load_manifests(paths: Iterable[str | Path]) -> list[dict[str, Any]]:
    """Read every Ingress document from the given files and directories, in order."""
    documents = []
    for file in manifest_files(paths):
        try:
            docs = list(yaml.safe_load_all(file.read_text(encoding='utf-8')))
        except yaml.YAMLError as exc:
            raise IngressConfigError(f'{file}: invalid YAML: {exc}') from exc

        ingresses = [d for d in docs if isinstance(d, dict) and d.get('kind') == 'Ingress']
        logger.debug('Read %d ingress document(s) from %s', len(ingresses), file)
        documents.extend(ingresses)
    return documents


def _flag(value: Any) -> bool:
    return str(value).strip().lower() == 'true'


def _int_annotation(annotations: dict, key: str, name: str) -> int | None:
    if key not in annotations:
        return None
    try:
        return int(annotations[key])
    except (TypeError, ValueError) as exc:
        raise IngressConfigError(f'{name}: annotation {key} must be an integer') from exc


def _backend(backend: dict | None, name: str) -> tuple[str, int]:
    service = (backend or {}).get('service') or {}
    port = (service.get('port') or {}).get('number')
    if not service.get('name'):
        raise IngressConfigError(f'{name}: backend without service name')
    if not isinstance(port, int):
        raise IngressConfigError(f'{name}: backend {service["name"]} needs a numeric port')
    return service['name'], port


def rules_from_ingress(doc: dict[str, Any], namespace: str = 'default') -> tuple[str, list[RoutingRule]]:
    """Convert one Ingress document into its resource name and ordered rules."""
    metadata = doc.get('metadata') or {}
    name = f'{metadata.get("namespace") or namespace}/{metadata.get("name") or "ingress"}'
    annotations = metadata.get('annotations') or {}
    spec = doc.get('spec') or {}

    rewrite_target = annotations.get(REWRITE_TARGET)
    regex = rewrite_target is not None or _flag(annotations.get(USE_REGEX, 'false'))
    common = {
        'ingress': name,
        'rewrite_target': rewrite_target,
        'limit_rps': _int_annotation(annotations, LIMIT_RPS, name),
        'limit_burst_multiplier': _int_annotation(annotations, LIMIT_BURST_MULTIPLIER, name) or 5,
    }

    rules = []
    for entry in spec.get('rules') or []:
        host = entry.get('host')
        for item in (entry.get('http') or {}).get('paths') or []:
            service, port = _backend(item.get('backend'), name)
            try:
                path_type = PathType(item.get('pathType', 'ImplementationSpecific'))
            except ValueError as exc:
                raise IngressConfigError(f'{name}: unknown pathType {item.get("pathType")!r}') from exc
            if regex:
                path_type = PathType.IMPLEMENTATION_SPECIFIC
            elif path_type is PathType.IMPLEMENTATION_SPECIFIC:
                path_type = PathType.PREFIX     # ingress-nginx without use-regex

            rules.append(_rule(name, host=host, path=item.get('path') or '/', path_type=path_type,
                               backend_service=service, backend_port=port, **common))

    if spec.get('defaultBackend'):
        service, port = _backend(spec['defaultBackend'], name)
        rules.append(_rule(name, path='/', path_type=PathType.PREFIX,
                           backend_service=service, backend_port=port,
                           **{**common, 'rewrite_target': None}))
    return name, rules


def _rule(name: str, **fields) -> RoutingRule:
    try:
        return RoutingRule(**fields)
    except ValidationError as exc:
        raise IngressConfigError(f'{name}: invalid rule: {exc}') from exc


def load_table(settings: Settings) -> RoutingTable:
    """
    Build the routing table the proxy serves.

    Manifests win over the built-in routes. Any configuration error propagates so
    the process refuses to start.
    """
    if not settings.manifests:
        logger.info('No manifests configured, using built-in routes')
        return build_table(settings.routes, settings.service_domain, settings.service_overrides)

    table = RoutingTable(settings.service_domain, settings.service_overrides)
    for doc in load_manifests(settings.manifests):
        name, rules = rules_from_ingress(doc, settings.namespace)
        table.apply(name, rules)
    return table
