"""Reads ThreatDragon documents into the common threat model."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .identity import resolve_identity
from .model import (
    THREAT_DRAGON_CELL, THREAT_DRAGON_MODEL, Asset, AssetType, CellRef, DataFlow,
    DataSource, ModelType, Threat, ThreatModel, ThreatStatus, ThreatType, TrustBoundary,
    set_extra,
)
from .schemas import Cell, Project

logger = logging.getLogger(__name__)

PROCESS = 'tm.Process'
STORE = 'tm.Store'
ACTOR = 'tm.Actor'
FLOW = 'tm.Flow'
BOUNDARY_BOX = 'tm.BoundaryBox'

ASSET_CELL_TYPES = {
    PROCESS: AssetType.APPLICATION,
    STORE: AssetType.DATABASE,
    ACTOR: AssetType.INFRASTRUCTURE,
}


class ThreatDragonParseError(Exception):
    """Raised when a ThreatDragon document cannot be read or validated."""
    pass


def project_from_json(text: str, source: str = '<string>') -> Project:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ThreatDragonParseError(f"JSON parse error in {source}: {e}")
    if not isinstance(data, dict):
        raise ThreatDragonParseError(f"{source} does not contain a ThreatDragon project")
    try:
        return Project.model_validate(data)
    except ValidationError as e:
        raise ThreatDragonParseError(f"Invalid ThreatDragon document {source}: {e}")


def project_to_json(project: Project) -> str:
    return json.dumps(project.to_dict(), indent=2, ensure_ascii=False)


def load_project(path: str | Path) -> Project:
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ThreatDragonParseError(f"Cannot read ThreatDragon file {path}: {e}")
    return project_from_json(text, str(path))


def save_project(project: Project, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(project_to_json(project) + '\n', encoding='utf-8')
    logger.info(f'ThreatDragon document written to {path}')
    return path


def cell_center(cell: Cell) -> Optional[tuple[float, float]]:
    if cell.position is None:
        return None
    width = cell.size.width if cell.size else 0.0
    height = cell.size.height if cell.size else 0.0
    return cell.position.x + width / 2, cell.position.y + height / 2


def box_contains(box: Cell, point: tuple[float, float]) -> bool:
    if box.position is None or box.size is None:
        return False
    x, y = point
    return (box.position.x <= x <= box.position.x + box.size.width
            and box.position.y <= y <= box.position.y + box.size.height)


class ThreatDragonInput:
    """Analyzes one ThreatDragon file.

    Cells carrying an identity tag were written by a previous run and keep
    their id. Untagged cells were drawn by a user; their id is derived from
    the file path and the cell id, and they are flagged as user generated.
    """

    def __init__(self, file_path: str | Path):
        self.file_path = str(file_path)

    def analyze(self) -> ThreatModel:
        logger.debug(f'Beginning ThreatDragon analysis of {self.file_path}')
        project = load_project(self.file_path)
        return self.analyze_project(project)

    def analyze_project(self, project: Project) -> ThreatModel:
        model = ThreatModel.empty()
        set_extra(model.extra, THREAT_DRAGON_MODEL, project)

        for diagram_index, diagram in enumerate(project.detail.diagrams):
            logger.debug(f'Diagram {diagram.id}: iterating over {len(diagram.cells)} cells')
            assets_by_cell: dict[str, Asset] = {}
            for cell in diagram.cells:
                if cell.data.type in ASSET_CELL_TYPES:
                    asset = self._asset_from_cell(cell, diagram_index)
                    assets_by_cell[cell.id] = asset
                    model.assets.append(asset)
                else:
                    logger.debug(f'Cell {cell.id} of type {cell.data.type!r} is not an asset')

            for cell in diagram.cells:
                if cell.data.type == BOUNDARY_BOX:
                    model.boundaries.append(
                        self._boundary_from_cell(cell, diagram_index, diagram.cells, assets_by_cell)
                    )
                elif cell.data.type == FLOW:
                    flow = self._flow_from_cell(cell, diagram_index, assets_by_cell)
                    if flow is not None:
                        model.data_flows.append(flow)

        logger.info(
            f'ThreatDragon analysis of {self.file_path} finished: {len(model.assets)} assets, '
            f'{len(model.data_flows)} data flows, {len(model.boundaries)} boundaries'
        )
        return model

    def _asset_from_cell(self, cell: Cell, diagram_index: int) -> Asset:
        asset_id, by_user = resolve_identity(cell.data.description, self.file_path, cell.id)
        if by_user:
            logger.debug(f'Cell {cell.id} has no stored id, it must be user created. Generated {asset_id}')
        asset = Asset(
            id=asset_id,
            display_name=cell.data.name or '',
            type=ASSET_CELL_TYPES[cell.data.type],
            threats=self._threats_from_cell(cell),
            source=DataSource.THREAT_DRAGON,
            is_generated_by_user=by_user,
        )
        set_extra(asset.extra, THREAT_DRAGON_CELL, CellRef(diagram_index, cell.id))
        return asset

    def _threats_from_cell(self, cell: Cell) -> list[Threat]:
        threats = []
        for index, td_threat in enumerate(cell.data.threats or []):
            internal_id, by_user = resolve_identity(
                td_threat.description, self.file_path, f'{cell.id}:{td_threat.id}'
            )
            threats.append(Threat(
                internal_id=internal_id,
                id=td_threat.id,
                title=td_threat.title,
                status=ThreatStatus.parse(td_threat.status),
                type=ThreatType.parse(td_threat.type),
                model_type=ModelType.parse(td_threat.modelType),
                is_generated_by_user=by_user,
                source=DataSource.THREAT_DRAGON,
                map_index=index,
                severity=td_threat.severity,
                description=td_threat.description,
                mitigation=td_threat.mitigation,
                score=td_threat.score,
                number=td_threat.number,
            ))
        return threats

    def _boundary_from_cell(self, cell: Cell, diagram_index: int, cells: list[Cell],
                            assets_by_cell: dict[str, Asset]) -> TrustBoundary:
        boundary_id, by_user = resolve_identity(cell.data.description, self.file_path, cell.id)
        contained = []
        for other in cells:
            asset = assets_by_cell.get(other.id)
            center = cell_center(other)
            if asset is not None and center is not None and box_contains(cell, center):
                contained.append(asset.id)
        boundary = TrustBoundary(
            id=boundary_id,
            display_name=cell.data.name or '',
            contained_assets=contained,
            source=DataSource.THREAT_DRAGON,
            is_generated_by_user=by_user,
        )
        set_extra(boundary.extra, THREAT_DRAGON_CELL, CellRef(diagram_index, cell.id))
        return boundary

    def _flow_from_cell(self, cell: Cell, diagram_index: int,
                        assets_by_cell: dict[str, Asset]) -> Optional[DataFlow]:
        source = assets_by_cell.get(cell.source.cell) if cell.source else None
        target = assets_by_cell.get(cell.target.cell) if cell.target else None
        if source is None or target is None:
            logger.debug(f'Flow {cell.id} is not connected to two assets, skipping')
            return None

        flow_id, by_user = resolve_identity(cell.data.description, self.file_path, cell.id)
        flow = DataFlow(
            id=flow_id,
            name=cell.data.name or '',
            source=source.display_name,
            target=target.display_name,
            protocol=cell.data.protocol or '',
            encrypted=bool(cell.data.isEncrypted),
            public_network=bool(cell.data.isPublicNetwork),
            bidirectional=bool(cell.data.isBidirectional),
            origin=DataSource.THREAT_DRAGON,
            is_generated_by_user=by_user,
        )
        set_extra(flow.extra, THREAT_DRAGON_CELL, CellRef(diagram_index, cell.id))
        return flow

