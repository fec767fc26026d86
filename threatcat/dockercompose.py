"""Docker Compose analyzer: services become assets, networks become trust boundaries.

Data flows are declared in comments of the compose file::

    #(web)-->(db);Orders;postgres;encrypted;private

``<--`` reverses the direction and ``<-->`` marks a bidirectional flow.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .identity import generate_id
from .model import Asset, AssetType, DataFlow, DataSource, ThreatModel, TrustBoundary

logger = logging.getLogger(__name__)

_FLOW_PATTERN = re.compile(r'#\s*\(([^)]*)\)\s*(<-->|-->|<--)\s*\(([^)]*)\)(.*)')


class DockerComposeParseError(Exception):
    """Raised when a compose file or an image map config cannot be read."""
    pass


_BUILTIN_IMAGES = {
    AssetType.APPLICATION: [
        'vitess/lite', 'vault', 'portainer', 'portainer/portainer-ce', 'grafana', 'promtail', 'loki',
        'artifactory-resource', 'drupal', 'mimir', 'cassandra', 'znc', 'irssi', 'radarr', 'sonarr',
        'jackett', 'wordpress', 'joomla', 'monica', 'redmine', 'xwiki', 'mediawiki', 'backdrop',
        'geonetwork', 'gazebo', 'convertigo', 'odoo', 'fiendica', 'silverpeas', 'rocket.chat',
        'plone', 'bonita', 'lightstreamer', 'eggdrop',
    ],
    # Base images and distributions say nothing about what runs on them.
    AssetType.UNKNOWN: [
        'busybox', 'alpine', 'ubuntu', 'debian', 'rockylinux', 'ros', 'archlinux', 'photon',
        'almalinux', 'clearlinux', 'cirros', 'mageia', 'alt', 'oraclelinux',
    ],
    AssetType.DATABASE: [
        'postgres', 'mongo', 'mysql', 'mariadb', 'influxdb', 'neo4j', 'percona', 'couchdb',
        'arangodb', 'couchbase', 'rethinkdb', 'crate', 'aerospike', 'orientdb', 'clickhouse',
    ],
    AssetType.WEBSERVER: [
        'nginx', 'httpd', 'haproxy', 'tomcat', 'caddy', 'jetty', 'tomee', 'istio/proxyv2',
        'pomerium', 'nginx-unprivileged', 'phpmyadmin', 'unit', 'notary', 'postfixadmin',
    ],
    AssetType.INFRASTRUCTURE: [
        'sapmachine', 'watchtower', 'fluent-bit', 'memcached', 'datadog/agent', 'redis', 'python',
        'curl', 'envoyproxy/envoy', 'node', 'kubectl', 'jenkins', 'timberio/vector', 'rabbitmq',
        'gitlab-runner', 'prom/node-exporter', 'newrelic/infrastructure-bundle', 'traefik',
        'docker', 'eclipse-mosquitto', 'sealed-secrets-controller', 'aws-for-fluent-bit',
        'percona-xtradb-cluster-operator', 'golang', 'nri-kubernetes', 'prom/prometheus', 'minio',
        'registry', 'cloudwatch-agent', 'pi-node-docker', 'github-pr-resource', 'ruby', 'airflow',
        'api-firewall', 'k8s-sidecar', 'lacework/datacollector', 'laws-xray-daemon',
        'portainer/agent', 'amazon-ecs-agent', 'php', 'newrelic-fluentbit-output', 'openvpn',
        'aws-cli', 'dynatrace-operator', 'rust', 'flink', 'groovy', 'erlang', 'elixir', 'kapacitor',
        'jruby', 'pypy', 'clojure', 'swift', 'hylang', 'gcc', 'haxe', 'yourls', 'varnish', 'julia',
        'ibmjava', 'fluentd', 'r-base', 'neurodebian', 'strom', 'haskell', 'ibm-semeru-runtimes',
        'spiped', 'swipl', 'emqx', 'dart', 'rakudo-star', 'spark', 'satosa', 'krakend', 'liquibase',
    ],
}


class DockerImageConfig(BaseModel):
    """User supplied image classification, one list per asset type."""
    applications: list[str] = Field(default_factory=list)
    databases: list[str] = Field(default_factory=list)
    webservers: list[str] = Field(default_factory=list)
    infrastructure: list[str] = Field(default_factory=list)

    def as_mapping(self) -> dict[str, AssetType]:
        mapping = {}
        for images, asset_type in (
            (self.applications, AssetType.APPLICATION),
            (self.databases, AssetType.DATABASE),
            (self.webservers, AssetType.WEBSERVER),
            (self.infrastructure, AssetType.INFRASTRUCTURE),
        ):
            for image in images:
                mapping[image] = asset_type
        return mapping


def strip_tag(image: str) -> str:
    """Remove the ``:tag`` while keeping a ``registry:port/`` prefix intact."""
    head, _, last = image.rpartition('/')
    name = last.split(':')[0].split('@')[0]
    return f'{head}/{name}' if head else name


def image_name(image: str) -> str:
    """Bare image name without registry, repository or tag."""
    return strip_tag(image).rsplit('/', 1)[-1]


class DockerImageMap:
    """Classifies container images into asset types."""

    def __init__(self, mapping: Optional[dict[str, AssetType]] = None):
        if mapping is None:
            mapping = {
                image: asset_type
                for asset_type, images in _BUILTIN_IMAGES.items()
                for image in images
            }
        self.mapping = dict(mapping)

    @classmethod
    def load(cls, config_path: Optional[str | Path] = None) -> 'DockerImageMap':
        """Built-in table, extended and overridden by the YAML config at ``config_path``."""
        image_map = cls()
        if config_path:
            image_map.mapping.update(read_image_config(config_path).as_mapping())
            logger.debug(f'Docker image map extended from {config_path}')
        return image_map

    def __contains__(self, image: str) -> bool:
        return image in self.mapping

    def __getitem__(self, image: str) -> AssetType:
        return self.mapping[image]

    def determine_asset_type(self, image: Optional[str]) -> AssetType:
        if not image:
            return AssetType.UNKNOWN
        name = image_name(image)
        if name in self.mapping:
            return self.mapping[name]

        logger.debug(f'No direct match for image {name!r}, trying suffix match')
        without_tag = strip_tag(image)
        matches = [key for key in self.mapping if without_tag.endswith(key)]
        if matches:
            return self.mapping[max(matches, key=len)]
        logger.debug(f'No asset type found for image {image!r}')
        return AssetType.UNKNOWN


def read_image_config(config_path: str | Path) -> DockerImageConfig:
    path = Path(config_path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = yaml.safe_load(f)
    except OSError as e:
        raise DockerComposeParseError(f"Cannot read Docker image map config {path}: {e}")
    except yaml.YAMLError as e:
        raise DockerComposeParseError(f"YAML parse error in {path}: {e}")
    try:
        return DockerImageConfig.model_validate(content or {})
    except ValidationError as e:
        raise DockerComposeParseError(f"Invalid Docker image map config {path}: {e}")


def parse_flow_comment(line: str, file_path: str) -> Optional[DataFlow]:
    """Parse one ``#(a)-->(b);Name;Protocol;encrypted;public`` comment, or return None."""
    match = _FLOW_PATTERN.search(line)
    if not match:
        return None
    source, arrow, target, rest = match.groups()
    source, target = source.strip(), target.strip()
    if arrow == '<--':
        source, target = target, source

    meta = [part.strip() for part in rest.split(';')[1:]]
    if len(meta) < 4:
        logger.warning(f'Not enough fields in data flow comment: {line.strip()!r}')
        return None
    name, protocol, encryption, network = meta[:4]
    if not name:
        logger.warning(f'Data flow comment without a name: {line.strip()!r}')
        return None

    encrypted = encryption.lower() == 'encrypted'
    if not encrypted and encryption.lower() != 'unencrypted':
        logger.warning(f'Unexpected encryption field {encryption!r} in data flow {name!r}')
    public = network.lower() in ('public', 'publicnetwork')
    if not public and network.lower() not in ('private', 'privatenetwork'):
        logger.warning(f'Unexpected public/private network field {network!r} in data flow {name!r}')

    return DataFlow(
        id=generate_id(file_path, name),
        name=name,
        source=source,
        target=target,
        protocol=protocol,
        encrypted=encrypted,
        public_network=public,
        bidirectional=arrow == '<-->',
        origin=DataSource.DOCKER_COMPOSE,
    )


def _service_networks(service: dict) -> list[str]:
    networks = service.get('networks') or []
    if isinstance(networks, dict):
        return [str(name) for name in networks]
    if isinstance(networks, list):
        return [str(name) for name in networks]
    return []


class DockerComposeAnalyzer:
    """Analyzes a single compose file into a ThreatModel."""

    def __init__(self, file_path: str | Path, image_map: Optional[DockerImageMap] = None):
        self.file_path = str(file_path)
        self.image_map = image_map or DockerImageMap()

    def _read(self) -> tuple[str, dict]:
        path = Path(self.file_path)
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise DockerComposeParseError(f"Cannot read compose file {path}: {e}")
        try:
            content = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise DockerComposeParseError(f"YAML parse error in {path}: {e}")
        if not isinstance(content, dict):
            raise DockerComposeParseError(f"Compose file {path} is not a mapping")
        services = content.get('services')
        if not isinstance(services, dict):
            raise DockerComposeParseError(f"Compose file {path} has no services")
        return text, content

    def analyze(self) -> ThreatModel:
        logger.debug(f'Beginning docker compose analysis of {self.file_path}')
        text, content = self._read()
        model = ThreatModel.empty()

        members: dict[str, list[str]] = {}
        for name, service in content['services'].items():
            service = service or {}
            asset = Asset(
                id=generate_id(self.file_path, str(name)),
                display_name=str(name),
                type=self.image_map.determine_asset_type(service.get('image')),
                source=DataSource.DOCKER_COMPOSE,
            )
            logger.debug(f'Service {name} -> asset {asset.id} ({asset.type.name})')
            model.assets.append(asset)
            for network in _service_networks(service):
                members.setdefault(network, []).append(asset.id)

        for network, asset_ids in members.items():
            model.boundaries.append(TrustBoundary(
                id=generate_id(self.file_path, f'network:{network}'),
                display_name=network,
                contained_assets=asset_ids,
                source=DataSource.DOCKER_COMPOSE,
            ))

        for line in text.splitlines():
            if '#' not in line:
                continue
            flow = parse_flow_comment(line, self.file_path)
            if flow is not None:
                model.data_flows.append(flow)

        logger.info(
            f'Docker compose analysis of {self.file_path} finished: {len(model.assets)} assets, '
            f'{len(model.data_flows)} data flows, {len(model.boundaries)} boundaries'
        )
        return model
