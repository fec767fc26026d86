"""Writes a merged threat model into a ThreatDragon document.

An existing document is updated in place: cells that carry an element's
identity tag (or, for user drawn elements, the cell the element was read
from) keep their position, z-order and every attribute the model does not
own. Only changed fields are written, so regenerating an unchanged model
gives back an equivalent document.
"""

import logging
import uuid
from typing import Any, Optional

from .changelog import ChangelogSink
from .identity import append_tag, extract_tag
from .incremental_placement import IncrementalPlacement
from .model import (
    THREAT_DRAGON_CELL, THREAT_DRAGON_MODEL, Asset, AssetType, CellRef, DataFlow,
    DataSource, ModelType, Threat, ThreatModel, ThreatStatus, ThreatType, TrustBoundary,
    get_extra_or,
)
from .placement import PlacementError, PlacementStrategy
from .placement_solver import solve_model
from .schemas import (
    Cell, CellData, Point, Project, Size, TdModel, TdThreat, Terminal,
    default_ports, new_project,
)
from .threatdragon import ACTOR, BOUNDARY_BOX, FLOW, PROCESS, STORE

logger = logging.getLogger(__name__)

MANAGED_CELL_TYPES = {PROCESS, STORE, ACTOR, FLOW, BOUNDARY_BOX}

# Grid search steps before falling back to row layout.
DEFAULT_MAX_STEPS = 1_000_000

STROKE = '#333333'
PROCESS_SIZE = (100.0, 100.0)
STORE_SIZE = (150.0, 75.0)
FLOW_SIZE = (200.0, 100.0)


def cell_uuid(element_id: str) -> str:
    """Deterministic cell or threat id for an element id."""
    try:
        return str(uuid.UUID(hex=element_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_OID, element_id))


def _update(obj: TdModel, name: str, value: Any) -> bool:
    """Assign ``value`` only if it differs, leaving absent fields absent when the value is empty."""
    current = getattr(obj, name)
    if current == value:
        return False
    if current is None and not value:
        return False
    setattr(obj, name, value)
    return True


def _line(**extra: Any) -> dict[str, Any]:
    return {'stroke': STROKE, 'strokeWidth': 1.5, 'strokeDasharray': None, **extra}


def _shape_for(asset_type: AssetType) -> tuple[str, str]:
    if asset_type == AssetType.DATABASE:
        return 'store', STORE
    return 'process', PROCESS


def _shape_attrs(shape: str, name: str) -> dict[str, Any]:
    if shape == 'store':
        return {'text': {'text': name}, 'topLine': _line(), 'bottomLine': _line()}
    return {'text': {'text': name}, 'body': _line()}


def _flow_attrs(bidirectional: bool) -> dict[str, Any]:
    return {
        'line': _line(
            targetMarker={'name': 'block'},
            sourceMarker={'name': 'block' if bidirectional else ''},
        ),
    }


class DiagramSynthesizer:
    """Turns a merged ThreatModel into cells of a ThreatDragon document.

    Without a document in the model's extras a fresh one is created and laid
    out by the grid solver. With one, new elements are appended below the
    existing cells.
    """

    def __init__(self, changelog: ChangelogSink, max_steps: Optional[int] = DEFAULT_MAX_STEPS):
        self.changelog = changelog
        self.max_steps = max_steps

    def generate(self, model: ThreatModel) -> Project:
        existing = get_extra_or(model.extra, THREAT_DRAGON_MODEL, None)
        if existing is None:
            logger.info('No existing ThreatDragon document, generating a new one')
            project = new_project()
            placement = self._fresh_placement(model)
        else:
            logger.info('Updating existing ThreatDragon document')
            project = existing.model_copy(deep=True)
            if not project.detail.diagrams:
                project.detail.diagrams.append(new_project().detail.diagrams[0])
            placement = IncrementalPlacement(
                cell for diagram in project.detail.diagrams for cell in diagram.cells
            )
        _SynthesisRun(self.changelog, project, placement).apply(model)
        return project

    def _fresh_placement(self, model: ThreatModel) -> PlacementStrategy:
        try:
            return solve_model(model.assets, model.boundaries, max_steps=self.max_steps)
        except PlacementError as e:
            logger.warning(f'Grid layout failed ({e}), falling back to row layout')
            return IncrementalPlacement()


class _SynthesisRun:
    """State of one generate() call over a working copy of the document."""

    def __init__(self, changelog: ChangelogSink, project: Project, placement: PlacementStrategy):
        self.changelog = changelog
        self.project = project
        self.placement = placement
        self.target = project.detail.diagrams[0]
        self.next_z = max((cell.zIndex for cell in self.target.cells), default=0) + 1
        self.cells_by_tag: dict[str, Cell] = {}
        self.cells_by_ref: dict[CellRef, Cell] = {}
        self._index_cells()
        # Asset display name -> diagram cell id, used to connect flows.
        self.asset_cells: dict[str, str] = {}

    def _index_cells(self) -> None:
        self.cells_by_tag.clear()
        self.cells_by_ref.clear()
        for index, diagram in enumerate(self.project.detail.diagrams):
            for cell in diagram.cells:
                self.cells_by_ref[CellRef(index, cell.id)] = cell
                if cell.data.type in MANAGED_CELL_TYPES:
                    tag = extract_tag(cell.data.description)
                    if tag and tag not in self.cells_by_tag:
                        self.cells_by_tag[tag] = cell

    def apply(self, model: ThreatModel) -> None:
        live_ids = {asset.id for asset in model.assets}
        live_ids.update(boundary.id for boundary in model.boundaries)
        live_ids.update(flow.id for flow in model.data_flows)
        self._remove_stale_cells(live_ids)

        for asset in model.assets:
            self._sync_asset(asset)
        for boundary in model.boundaries:
            self._sync_boundary(boundary)
        for flow in model.data_flows:
            self._sync_flow(flow)

    def _find_cell(self, element_id: str, extra: dict[str, Any]) -> Optional[Cell]:
        cell = self.cells_by_tag.get(element_id)
        if cell is None:
            ref = get_extra_or(extra, THREAT_DRAGON_CELL, None)
            if ref is not None:
                cell = self.cells_by_ref.get(ref)
        return cell

    def _add_cell(self, cell: Cell) -> None:
        self.target.cells.append(cell)
        self.next_z += 1

    def _describe(self, element_id: str, by_user: bool, description: Optional[str] = None) -> str:
        if by_user:
            return description or ''
        return append_tag(description, element_id)

    # ==================== Removal ====================

    def _remove_stale_cells(self, live_ids: set[str]) -> None:
        # Elements missing from the model were already reported by the merger;
        # only edges that lose an endpoint get their own changelog entry.
        for diagram in self.project.detail.diagrams:
            stale = set()
            for cell in diagram.cells:
                if cell.data.type not in MANAGED_CELL_TYPES:
                    continue
                tag = extract_tag(cell.data.description)
                if tag and tag not in live_ids:
                    stale.add(cell.id)
            if not stale:
                continue
            orphaned = set()
            for cell in diagram.cells:
                if cell.id not in stale and cell.is_edge and (
                    (cell.source and cell.source.cell in stale)
                    or (cell.target and cell.target.cell in stale)
                ):
                    orphaned.add(cell.id)

            kept = []
            for cell in diagram.cells:
                if cell.id in stale:
                    logger.debug(f'Removing cell {cell.id} from diagram {diagram.title!r}')
                elif cell.id in orphaned:
                    logger.debug(f'Removing edge {cell.id} whose endpoint was removed')
                    self.changelog.add_entry(
                        f"Removed '{cell.data.name or cell.id}' from diagram '{diagram.title}' "
                        f"because one of its endpoints was removed."
                    )
                else:
                    kept.append(cell)
            diagram.cells = kept
        self._index_cells()

    # ==================== Assets ====================

    def _sync_asset(self, asset: Asset) -> None:
        cell = self._find_cell(asset.id, asset.extra)
        if cell is None:
            cell = self._create_asset_cell(asset)
            self.changelog.add_entry(f"Added asset '{asset.display_name}' to the diagram.")
        else:
            self._update_asset_cell(cell, asset)
        self.asset_cells[asset.display_name] = cell.id

    def _create_asset_cell(self, asset: Asset) -> Cell:
        shape, cell_type = _shape_for(asset.type)
        width, height = STORE_SIZE if shape == 'store' else PROCESS_SIZE
        x, y = self.placement.get_position(asset.id)
        threats = [self._new_threat(threat) for threat in asset.threats]
        cell = Cell(
            position=Point(x=x, y=y),
            size=Size(width=width, height=height),
            attrs=_shape_attrs(shape, asset.display_name),
            visible=True,
            shape=shape,
            ports=default_ports(),
            id=cell_uuid(asset.id),
            zIndex=self.next_z,
            data=CellData(
                type=cell_type,
                name=asset.display_name,
                description=self._describe(asset.id, asset.is_generated_by_user),
                outOfScope=False,
                reasonOutOfScope='',
                threats=threats,
                hasOpenThreats=any(t.status == ThreatStatus.OPEN.label for t in threats),
            ),
        )
        logger.debug(f'Created {shape} cell {cell.id} for asset {asset.id}')
        self._add_cell(cell)
        return cell

    def _update_asset_cell(self, cell: Cell, asset: Asset) -> None:
        data = cell.data
        _update(data, 'name', asset.display_name)
        if cell.attrs is None:
            cell.attrs = {}
        text = cell.attrs.setdefault('text', {})
        if text.get('text') != asset.display_name:
            text['text'] = asset.display_name

        # Only switch between store and non-store shapes; actors and processes are kept.
        shape, cell_type = _shape_for(asset.type)
        if (data.type == STORE) != (cell_type == STORE):
            logger.debug(f'Cell {cell.id} changes shape to {shape}')
            cell.shape = shape
            data.type = cell_type
            cell.attrs = _shape_attrs(shape, asset.display_name)

        if not asset.is_generated_by_user:
            _update(data, 'description', append_tag(data.description, asset.id))

        threats = self._merge_threats(cell, asset)
        _update(data, 'threats', threats)
        _update(data, 'hasOpenThreats', any(t.status == ThreatStatus.OPEN.label for t in threats))

    # ==================== Threats ====================

    def _merge_threats(self, cell: Cell, asset: Asset) -> list[TdThreat]:
        """Rebuild the threat list of an existing cell in its original order.

        Threats read from this cell are updated in place, unsupported ones are
        kept as they are and threats new to the cell are appended.
        """
        original = cell.data.threats or []
        by_index: dict[int, Threat] = {}
        fresh: list[Threat] = []
        for threat in asset.threats:
            if threat.source == DataSource.THREAT_DRAGON and 0 <= threat.map_index < len(original):
                by_index[threat.map_index] = threat
            else:
                fresh.append(threat)

        threats = []
        for index, td_threat in enumerate(original):
            threat = by_index.get(index)
            if threat is not None:
                _update(td_threat, 'title', threat.title)
                if threat.status != ThreatStatus.UNKNOWN:
                    _update(td_threat, 'status', threat.status.label)
                threats.append(td_threat)
            elif (ThreatType.parse(td_threat.type) == ThreatType.UNKNOWN
                  or ModelType.parse(td_threat.modelType) == ModelType.NOT_SUPPORTED):
                threats.append(td_threat)
            else:
                logger.debug(f'Threat {td_threat.id} of cell {cell.id} is gone from the model')
                self.changelog.add_entry(
                    f"Removed threat '{td_threat.title}' from '{cell.data.name}'."
                )

        for threat in fresh:
            threats.append(self._new_threat(threat))
            self.changelog.add_entry(f"Added threat '{threat.label}' to '{asset.display_name}'.")
        return threats

    def _new_threat(self, threat: Threat) -> TdThreat:
        detail = self.project.detail
        detail.threatTop += 1
        return TdThreat(
            id=cell_uuid(threat.internal_id),
            title=threat.title,
            status=threat.status.label if threat.status != ThreatStatus.UNKNOWN else ThreatStatus.OPEN.label,
            severity=threat.severity or 'Medium',
            type=threat.type.label,
            description=self._describe(threat.internal_id, threat.is_generated_by_user, threat.description),
            mitigation=threat.mitigation or '',
            modelType=threat.model_type.label,
            new=False,
            number=detail.threatTop,
            score=threat.score or '',
        )

    # ==================== Boundaries ====================

    def _sync_boundary(self, boundary: TrustBoundary) -> None:
        cell = self._find_cell(boundary.id, boundary.extra)
        if cell is not None:
            _update(cell.data, 'name', boundary.display_name)
            if cell.attrs is None:
                cell.attrs = {}
            header = cell.attrs.setdefault('headerText', {})
            if header.get('text') != boundary.display_name:
                header['text'] = boundary.display_name
            if not boundary.is_generated_by_user:
                _update(cell.data, 'description', append_tag(cell.data.description, boundary.id))
            return

        x, y, width, height = self.placement.get_boundary_position(boundary.id)
        cell = Cell(
            position=Point(x=x, y=y),
            size=Size(width=width, height=height),
            attrs={'headerText': {'text': boundary.display_name}},
            visible=True,
            shape='trust-boundary-box',
            zIndex=-1,
            id=cell_uuid(boundary.id),
            data=CellData(
                type=BOUNDARY_BOX,
                name=boundary.display_name,
                description=self._describe(boundary.id, boundary.is_generated_by_user),
                isTrustBoundary=True,
                hasOpenThreats=False,
            ),
        )
        self.target.cells.append(cell)
        self.changelog.add_entry(f"Added trust boundary '{boundary.display_name}' to the diagram.")

    # ==================== Data flows ====================

    def _sync_flow(self, flow: DataFlow) -> None:
        source_id = self.asset_cells.get(flow.source)
        target_id = self.asset_cells.get(flow.target)
        cell = self._find_cell(flow.id, flow.extra)
        if source_id is None or target_id is None:
            if cell is None:
                logger.warning(
                    f"Data flow '{flow.name}' references unknown asset "
                    f"'{flow.source if source_id is None else flow.target}', skipping"
                )
            return

        if cell is None:
            self._create_flow_cell(flow, source_id, target_id)
            self.changelog.add_entry(
                f"Added data flow '{flow.name}' from '{flow.source}' to '{flow.target}'."
            )
            return

        data = cell.data
        _update(data, 'name', flow.name)
        if cell.labels and isinstance(cell.labels[0], str) and cell.labels[0] != flow.name:
            cell.labels[0] = flow.name
        _update(data, 'protocol', flow.protocol)
        _update(data, 'isEncrypted', flow.encrypted)
        _update(data, 'isPublicNetwork', flow.public_network)
        if _update(data, 'isBidirectional', flow.bidirectional):
            line = (cell.attrs or {}).get('line')
            if isinstance(line, dict):
                line['sourceMarker'] = {'name': 'block' if flow.bidirectional else ''}
        if not flow.is_generated_by_user:
            _update(data, 'description', append_tag(data.description, flow.id))
        if cell.source is None or cell.source.cell != source_id:
            cell.source = Terminal(cell=source_id)
        if cell.target is None or cell.target.cell != target_id:
            cell.target = Terminal(cell=target_id)

    def _create_flow_cell(self, flow: DataFlow, source_id: str, target_id: str) -> None:
        cell = Cell(
            shape='flow',
            attrs=_flow_attrs(flow.bidirectional),
            width=FLOW_SIZE[0],
            height=FLOW_SIZE[1],
            zIndex=self.next_z,
            connector='smooth',
            id=cell_uuid(flow.id),
            data=CellData(
                type=FLOW,
                name=flow.name,
                description=self._describe(flow.id, flow.is_generated_by_user),
                outOfScope=False,
                reasonOutOfScope='',
                protocol=flow.protocol,
                isEncrypted=flow.encrypted,
                isPublicNetwork=flow.public_network,
                isBidirectional=flow.bidirectional,
                hasOpenThreats=False,
                threats=[],
            ),
            labels=[flow.name],
            source=Terminal(cell=source_id),
            target=Terminal(cell=target_id),
            vertices=[],
        )
        self._add_cell(cell)
