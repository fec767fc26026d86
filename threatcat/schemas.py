"""Pydantic models for the ThreatDragon v2 JSON document.

Every model keeps unknown keys and is dumped with ``exclude_unset`` so that a
document read from disk is written back with the same keys: absent keys stay
absent, explicit nulls stay null and zero values stay present.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

PORT_GROUPS = ('top', 'right', 'bottom', 'left')


class TdModel(BaseModel):
    """Base for all document models."""
    model_config = ConfigDict(extra='allow')

    def is_set(self, field_name: str) -> bool:
        return field_name in self.model_fields_set

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode='json', exclude_unset=True)


class Point(TdModel):
    x: float = 0.0
    y: float = 0.0


class Size(TdModel):
    width: float = 0.0
    height: float = 0.0


class Terminal(TdModel):
    """Endpoint of a flow: either attached to a cell/port or a free point."""
    cell: Optional[str] = None
    port: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None

    @property
    def is_connected(self) -> bool:
        return self.cell is not None or self.port is not None


class TdThreat(TdModel):
    id: str = ''
    title: str = ''
    status: str = ''
    severity: str = ''
    type: str = ''
    description: str = ''
    mitigation: str = ''
    modelType: str = ''
    new: Optional[bool] = None
    number: Optional[int] = None
    score: Optional[str] = None


class CellData(TdModel):
    type: str = ''
    name: Optional[str] = None
    description: Optional[str] = None
    hasOpenThreats: bool = False
    isTrustBoundary: Optional[bool] = None
    outOfScope: Optional[bool] = None
    reasonOutOfScope: Optional[str] = None
    providesAuthentication: Optional[bool] = None
    threats: Optional[list[TdThreat]] = None
    privilegeLevel: Optional[str] = None
    isBidirectional: Optional[bool] = None
    isEncrypted: Optional[bool] = None
    isPublicNetwork: Optional[bool] = None
    protocol: Optional[str] = None


class Cell(TdModel):
    """A diagram cell: node shapes carry position/size, edges carry source/target."""
    position: Optional[Point] = None
    size: Optional[Size] = None
    attrs: Optional[dict[str, Any]] = None
    visible: Optional[bool] = None
    shape: str = ''
    zIndex: int = 0
    id: str = ''
    data: CellData = Field(default_factory=CellData)
    ports: Optional[dict[str, Any]] = None
    width: Optional[float] = None
    height: Optional[float] = None
    connector: Optional[Any] = None
    labels: Optional[list[Any]] = None
    source: Optional[Terminal] = None
    target: Optional[Terminal] = None
    vertices: Optional[list[Point]] = None

    @property
    def is_edge(self) -> bool:
        return self.source is not None or self.target is not None


class Diagram(TdModel):
    id: int = 0
    title: str = ''
    diagramType: str = ''
    placeholder: Optional[str] = None
    thumbnail: str = ''
    version: str = ''
    cells: list[Cell] = Field(default_factory=list)
    description: Optional[str] = None


class Contributor(TdModel):
    name: str = ''


class Detail(TdModel):
    contributors: list[Contributor] = Field(default_factory=list)
    diagrams: list[Diagram] = Field(default_factory=list)
    diagramTop: int = 0
    reviewer: str = ''
    threatTop: int = 0


class Summary(TdModel):
    title: str = ''
    owner: str = ''
    description: str = ''
    id: int = 0


class Project(TdModel):
    """Root of a ThreatDragon document."""
    version: str = ''
    summary: Summary = Field(default_factory=Summary)
    detail: Detail = Field(default_factory=Detail)


def default_port_group(position: str) -> dict[str, Any]:
    return {
        'position': position,
        'attrs': {
            'circle': {
                'r': 4,
                'magnet': True,
                'stroke': '#5F95FF',
                'strokeWidth': 1,
                'fill': '#fff',
                'style': {'visibility': 'hidden'},
            },
        },
    }


def default_ports() -> dict[str, Any]:
    """Four hidden connection ports, one per side, as ThreatDragon draws them."""
    return {
        'groups': {position: default_port_group(position) for position in PORT_GROUPS},
        'items': [{'group': position, 'id': f'port-{position}'} for position in PORT_GROUPS],
    }


def new_project(title: str = 'ThreatCat Threat Model') -> Project:
    """An empty document with one STRIDE diagram."""
    return Project(
        version='2.2.0',
        summary=Summary(title=title, owner='', description='', id=0),
        detail=Detail(
            contributors=[],
            diagrams=[
                Diagram(
                    id=0,
                    title='Main Diagram',
                    diagramType='STRIDE',
                    placeholder='New STRIDE diagram description',
                    thumbnail='./public/content/images/thumbnail.stride.jpg',
                    version='2.2.0',
                    cells=[],
                ),
            ],
            diagramTop=1,
            reviewer='',
            threatTop=0,
        ),
    )
