"""Common in-memory threat model shared by all inputs, the merger and the synthesizer."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Generic, NamedTuple, Optional, TypeVar

from .schemas import Project

T = TypeVar('T')


class AssetType(IntEnum):
    UNKNOWN = 0
    APPLICATION = 1
    DATABASE = 2
    WEBSERVER = 3
    INFRASTRUCTURE = 4


class DataSource(IntEnum):
    UNKNOWN = 0
    THREAT_DRAGON = 1
    DOCKER_COMPOSE = 2
    MERGED = 3

    @property
    def label(self) -> str:
        return {
            DataSource.UNKNOWN: 'Unknown',
            DataSource.THREAT_DRAGON: 'Threat Dragon',
            DataSource.DOCKER_COMPOSE: 'Docker Compose',
            DataSource.MERGED: 'Merged',
        }[self]


class ThreatType(IntEnum):
    UNKNOWN = 0
    SPOOFING = 1
    TAMPERING = 2
    REPUDIATION = 3
    INFORMATION_DISCLOSURE = 4
    DENIAL_OF_SERVICE = 5
    ELEVATION_OF_PRIVILEGE = 6

    @property
    def label(self) -> str:
        return _THREAT_TYPE_LABELS.get(self, 'ThreatTypeUnknown')

    @classmethod
    def parse(cls, value: Optional[str]) -> 'ThreatType':
        for threat_type, label in _THREAT_TYPE_LABELS.items():
            if label == value:
                return threat_type
        return cls.UNKNOWN


_THREAT_TYPE_LABELS = {
    ThreatType.SPOOFING: 'Spoofing',
    ThreatType.TAMPERING: 'Tampering',
    ThreatType.REPUDIATION: 'Repudiation',
    ThreatType.INFORMATION_DISCLOSURE: 'Information disclosure',
    ThreatType.DENIAL_OF_SERVICE: 'Denial of service',
    ThreatType.ELEVATION_OF_PRIVILEGE: 'Elevation of privilege',
}


class ModelType(IntEnum):
    STRIDE = 0
    NOT_SUPPORTED = 1

    @property
    def label(self) -> str:
        return 'STRIDE' if self is ModelType.STRIDE else 'NotSupported'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'ModelType':
        return cls.STRIDE if value == 'STRIDE' else cls.NOT_SUPPORTED


class ThreatStatus(IntEnum):
    OPEN = 0
    MITIGATED = 1
    NOT_APPLICABLE = 2
    UNKNOWN = 3

    @property
    def label(self) -> str:
        return _STATUS_LABELS.get(self, 'UnknownStatus')

    @classmethod
    def parse(cls, value: Optional[str]) -> 'ThreatStatus':
        for status, label in _STATUS_LABELS.items():
            if label == value:
                return status
        return cls.UNKNOWN


_STATUS_LABELS = {
    ThreatStatus.OPEN: 'Open',
    ThreatStatus.MITIGATED: 'Mitigated',
    ThreatStatus.NOT_APPLICABLE: 'Not Applicable',
}


@dataclass
class Threat:
    """A threat attached to an asset.

    ``map_index`` points back into the originating ThreatDragon cell's threat
    list, or is -1 when the threat was not read from a diagram.
    """
    internal_id: str
    id: str
    title: str
    status: ThreatStatus = ThreatStatus.OPEN
    type: ThreatType = ThreatType.UNKNOWN
    model_type: ModelType = ModelType.STRIDE
    is_generated_by_user: bool = False
    source: DataSource = DataSource.UNKNOWN
    map_index: int = -1
    severity: Optional[str] = None
    description: Optional[str] = None
    mitigation: Optional[str] = None
    score: Optional[str] = None
    number: Optional[int] = None

    @property
    def is_supported(self) -> bool:
        """Only supported threats take part in merge lifecycle decisions."""
        return self.model_type != ModelType.NOT_SUPPORTED and self.type != ThreatType.UNKNOWN

    @property
    def label(self) -> str:
        return f'{self.type.label} {self.title}'


@dataclass
class Asset:
    id: str
    display_name: str
    type: AssetType = AssetType.UNKNOWN
    threats: list[Threat] = field(default_factory=list)
    source: DataSource = DataSource.UNKNOWN
    is_generated_by_user: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrustBoundary:
    id: str
    display_name: str
    contained_assets: list[str] = field(default_factory=list)
    source: DataSource = DataSource.UNKNOWN
    is_generated_by_user: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class DataFlow:
    """A connection between two assets, referenced by display name."""
    id: str
    name: str
    source: str
    target: str
    protocol: str = ''
    encrypted: bool = False
    public_network: bool = False
    bidirectional: bool = False
    origin: DataSource = DataSource.UNKNOWN
    is_generated_by_user: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ThreatModel:
    assets: list[Asset] = field(default_factory=list)
    data_flows: list[DataFlow] = field(default_factory=list)
    boundaries: list[TrustBoundary] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> 'ThreatModel':
        return cls()

    def asset_by_id(self, asset_id: str) -> Optional[Asset]:
        for asset in self.assets:
            if asset.id == asset_id:
                return asset
        return None


# ==================== Typed extra registry ====================

class CellRef(NamedTuple):
    """Location of the diagram cell an element was read from."""
    diagram_index: int
    cell_id: str


class ExtraError(LookupError):
    """Base class for typed extra lookups."""


class ExtraNotFoundError(ExtraError):
    pass


class ExtraTypeError(ExtraError):
    pass


@dataclass(frozen=True)
class ExtraKey(Generic[T]):
    name: str
    value_type: type


THREAT_DRAGON_MODEL: ExtraKey[Project] = ExtraKey('ThreatDragonModel', Project)
THREAT_DRAGON_CELL: ExtraKey[CellRef] = ExtraKey('ThreatDragonCell', CellRef)


def get_extra(extra: dict[str, Any], key: ExtraKey[T]) -> T:
    """Return the value stored under ``key``, checking its type."""
    if key.name not in extra:
        raise ExtraNotFoundError(f"Extra '{key.name}' not found")
    value = extra[key.name]
    if not isinstance(value, key.value_type):
        raise ExtraTypeError(
            f"Extra '{key.name}' has type {type(value).__name__}, expected {key.value_type.__name__}"
        )
    return value


def get_extra_or(extra: dict[str, Any], key: ExtraKey[T], default: T) -> T:
    try:
        return get_extra(extra, key)
    except ExtraError:
        return default


def set_extra(extra: dict[str, Any], key: ExtraKey[T], value: T) -> None:
    extra[key.name] = value
