"""Grid constraint solver that lays out trust boundaries and the assets inside them.

Boxes (trust boundaries) and nodes (assets) are placed on a 10x10 grid so
that every node lies inside exactly the boxes it is a member of. Boxes are
placed first by a deterministic depth first search; after every tentative
box the set of cells still consistent with each node's memberships is
narrowed, and the branch is abandoned as soon as one of those sets is empty.
Nodes are then matched to distinct cells along augmenting paths; when they
do not fit, the box search resumes with the next arrangement.

Cell sets are int bitmasks with bit ``x * GRID_H + y`` set for cell (x, y).
The search is exponential in the number of boxes; trust boundary counts are
expected to stay in the single digits.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Sequence

from .model import Asset, TrustBoundary
from .placement import (
    BoxPlacementError, NodeAssignmentError, NodePlacementError,
    PlacementBudgetExceededError, UnknownElementError,
)

logger = logging.getLogger(__name__)

GRID_W = 10
GRID_H = 10

MIN_BOX_W = 2
MAX_BOX_W = 4
MIN_BOX_H = 2
MAX_BOX_H = 4

OFFSET_X = 200.0
OFFSET_Y = 100.0
BOUNDARY_OVERSIZE = 10.0
MARGIN = 50.0

ALL_CELLS = (1 << (GRID_W * GRID_H)) - 1


@dataclass(frozen=True)
class BoxDef:
    id: str


@dataclass(frozen=True)
class NodeDef:
    id: str


@dataclass(frozen=True)
class Membership:
    node_id: str
    box_id: str


@dataclass(frozen=True)
class PlacedBox:
    id: str
    x: int
    y: int
    w: int
    h: int

    def contains(self, x: int, y: int) -> bool:
        return self.x <= x < self.x + self.w and self.y <= y < self.y + self.h

    @property
    def mask(self) -> int:
        return box_mask(self.x, self.y, self.w, self.h)


@dataclass
class PlacedNode:
    id: str
    x: int
    y: int
    sub_offset: int = 0


@dataclass
class Solution:
    """A solved layout that converts grid cells into diagram pixels."""
    boxes: list[PlacedBox] = field(default_factory=list)
    nodes: list[PlacedNode] = field(default_factory=list)
    row_heights: Optional[list[int]] = None

    def calculate_row_heights(self) -> None:
        """Stack nodes sharing a cell and size every row by its fullest cell."""
        counts = [[0] * GRID_W for _ in range(GRID_H)]
        for node in self.nodes:
            node.sub_offset = counts[node.y][node.x]
            counts[node.y][node.x] += 1
        self.row_heights = [max(row) for row in counts]

    def _rows_before(self, y: int) -> int:
        if self.row_heights is None:
            self.calculate_row_heights()
        return sum(self.row_heights[:y])

    def get_position(self, asset_id: str) -> tuple[float, float]:
        node = next((n for n in self.nodes if n.id == asset_id), None)
        if node is None:
            raise UnknownElementError(f'asset {asset_id} does not exist in solution')
        x = node.x * OFFSET_X
        y = (self._rows_before(node.y) + node.sub_offset) * OFFSET_Y
        return x + MARGIN, y + MARGIN

    def get_boundary_position(self, boundary_id: str) -> tuple[float, float, float, float]:
        box = next((b for b in self.boxes if b.id == boundary_id), None)
        if box is None:
            raise UnknownElementError(f'boundary {boundary_id} does not exist in solution')
        rows_before = self._rows_before(box.y)
        rows_spanned = sum(self.row_heights[box.y:box.y + box.h])

        x = box.x * OFFSET_X - BOUNDARY_OVERSIZE
        y = rows_before * OFFSET_Y - BOUNDARY_OVERSIZE
        w = box.w * OFFSET_X + 2 * BOUNDARY_OVERSIZE
        h = rows_spanned * OFFSET_Y + 2 * BOUNDARY_OVERSIZE
        return x + MARGIN, y + MARGIN, w, h


def box_mask(x: int, y: int, w: int, h: int) -> int:
    column = ((1 << h) - 1) << y
    mask = 0
    for cx in range(x, x + w):
        mask |= column << (cx * GRID_H)
    return mask


def iter_cells(mask: int) -> Iterator[int]:
    """Yield the cell indices set in ``mask`` in ascending order."""
    while mask:
        lowest = mask & -mask
        yield lowest.bit_length() - 1
        mask ^= lowest


def decode_cell(index: int) -> tuple[int, int]:
    return index // GRID_H, index % GRID_H


def _box_candidates(box_id: str, x_anchored: bool, y_anchored: bool) -> Iterator[PlacedBox]:
    # Until some box sits on x=0 (y=0) every other x (y) is a translation of a
    # layout already explored.
    for w in range(MIN_BOX_W, MAX_BOX_W + 1):
        for h in range(MIN_BOX_H, MAX_BOX_H + 1):
            for x in range(0, GRID_W - w + 1):
                if not x_anchored and x > 0:
                    break
                for y in range(0, GRID_H - h + 1):
                    if not y_anchored and y > 0:
                        break
                    yield PlacedBox(box_id, x, y, w, h)


class _StepCounter:
    def __init__(self, max_steps: Optional[int]):
        self.max_steps = max_steps
        self.steps = 0

    def tick(self) -> None:
        self.steps += 1
        if self.max_steps is not None and self.steps > self.max_steps:
            raise PlacementBudgetExceededError(f'search exceeded {self.max_steps} steps')


def _place_boxes(
    boxes: Sequence[BoxDef], wanted: list[frozenset[str]], counter: _StepCounter
) -> Iterator[tuple[list[PlacedBox], tuple[int, ...]]]:
    """Yield every box arrangement with the final consistent cells per node."""
    masks = tuple(ALL_CELLS for _ in wanted)
    if not boxes:
        yield [], masks
        return

    placed: list[PlacedBox] = []
    # One frame per box depth: its remaining candidates and the node masks
    # before it was placed.
    frames = [(_box_candidates(boxes[0].id, False, False), masks)]
    while frames:
        candidates, masks = frames[-1]
        box = next(candidates, None)
        if box is None:
            frames.pop()
            if placed:
                placed.pop()
            continue
        counter.tick()

        covered = box.mask
        narrowed = tuple(
            mask & covered if box.id in wants else mask & ~covered
            for mask, wants in zip(masks, wanted)
        )
        if not all(narrowed):
            continue

        placed.append(box)
        if len(placed) == len(boxes):
            yield list(placed), narrowed
            placed.pop()
            continue
        frames.append((
            _box_candidates(
                boxes[len(placed)].id,
                any(b.x == 0 for b in placed),
                any(b.y == 0 for b in placed),
            ),
            narrowed,
        ))


def _assign_nodes(allowed: Sequence[int], counter: _StepCounter) -> list[int]:
    """Pick one cell per node from its allowed cells, no two nodes sharing one.

    Nodes are matched in order by augmenting paths. A node takes the lowest
    free cell it allows; when none is free, an earlier node is moved along an
    alternating path to make room. A node that cannot be matched this way
    proves that no distinct assignment exists.
    """
    if not allowed:
        return []
    union = 0
    for mask in allowed:
        union |= mask
    if union.bit_count() < len(allowed):
        raise NodeAssignmentError("couldn't assign nodes to distinct cells")

    owner: dict[int, int] = {}
    taken = 0

    def augment(node: int, seen: set[int]) -> bool:
        nonlocal taken
        free = allowed[node] & ~taken
        if free:
            cell = (free & -free).bit_length() - 1
            counter.tick()
            owner[cell] = node
            taken |= 1 << cell
            return True
        for cell in iter_cells(allowed[node]):
            if cell in seen:
                continue
            seen.add(cell)
            counter.tick()
            if augment(owner[cell], seen):
                owner[cell] = node
                return True
        return False

    # Recursion depth is bounded by the node count, which the check above
    # keeps within the grid size.
    for node in range(len(allowed)):
        if not augment(node, set()):
            raise NodeAssignmentError("couldn't assign nodes to distinct cells")

    cells = [0] * len(allowed)
    for cell, node in owner.items():
        cells[node] = cell
    return cells


def solve(
    boxes: Sequence[BoxDef],
    nodes: Sequence[NodeDef],
    memberships: Iterable[Membership],
    max_steps: Optional[int] = None,
) -> Solution:
    """Lay out ``boxes`` and ``nodes`` so that containment matches ``memberships``.

    Box arrangements are tried in a fixed order until one leaves room to put
    every node in its own cell, so the result is fully determined by the order
    of the inputs. ``max_steps`` bounds the number of candidates the searches
    may try; by default the search is unbounded.

    Raises:
        BoxPlacementError: no box arrangement leaves every node a cell.
        NodePlacementError: a node is a member of a box that is not being placed.
        NodeAssignmentError: no box arrangement lets the nodes occupy distinct cells.
        PlacementBudgetExceededError: ``max_steps`` was exhausted.
    """
    node_to_boxes: dict[str, set[str]] = {}
    for membership in memberships:
        node_to_boxes.setdefault(membership.node_id, set()).add(membership.box_id)
    wanted = [frozenset(node_to_boxes.get(node.id, ())) for node in nodes]

    box_ids = {box.id for box in boxes}
    for node, wants in zip(nodes, wanted):
        unknown = sorted(wants - box_ids)
        if unknown:
            raise NodePlacementError(f'no allowed position for node {node.id}: box {unknown[0]} is not placed')

    capacity = MAX_BOX_W * MAX_BOX_H
    for box in boxes:
        members = sum(1 for wants in wanted if box.id in wants)
        if members > capacity:
            raise NodeAssignmentError(
                f"couldn't assign nodes to distinct cells: box {box.id} has {members} members "
                f'but at most {capacity} cells'
            )

    logger.debug(f'Solving layout for {len(boxes)} boxes and {len(nodes)} nodes')
    counter = _StepCounter(max_steps)
    assignment_failed = False
    for placed_boxes, allowed in _place_boxes(boxes, wanted, counter):
        try:
            cells = _assign_nodes(allowed, counter)
        except NodeAssignmentError:
            logger.debug('Nodes do not fit this box arrangement, trying the next one')
            assignment_failed = True
            continue
        placed_nodes = [
            PlacedNode(node.id, *decode_cell(cell)) for node, cell in zip(nodes, cells)
        ]
        logger.debug(f'Layout solved after {counter.steps} steps')
        return Solution(boxes=placed_boxes, nodes=placed_nodes)

    if assignment_failed:
        raise NodeAssignmentError("couldn't assign nodes to distinct cells")
    raise BoxPlacementError(
        f'no arrangement of boxes and nodes found on a {GRID_W}x{GRID_H} grid with the chosen sizes'
    )


def solve_model(
    assets: Sequence[Asset], boundaries: Sequence[TrustBoundary], max_steps: Optional[int] = None
) -> Solution:
    """Solve the layout of a threat model: assets are nodes, boundaries are boxes."""
    nodes = [NodeDef(asset.id) for asset in assets]
    boxes = [BoxDef(boundary.id) for boundary in boundaries]
    memberships = [
        Membership(node_id=asset_id, box_id=boundary.id)
        for boundary in boundaries
        for asset_id in boundary.contained_assets
    ]
    return solve(boxes, nodes, memberships, max_steps=max_steps)
