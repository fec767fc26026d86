"""Append-only layout used when new elements are added to an existing diagram."""

import logging
from typing import Iterable

from .schemas import Cell

logger = logging.getLogger(__name__)

DEFAULT_MAX_WIDTH = 1000.0
DEFAULT_GAP = 50.0
START_X = 50.0
START_Y = 50.0
NODE_FOOTPRINT = (150.0, 100.0)
BOUNDARY_SIZE = (250.0, 150.0)


class IncrementalPlacement:
    """Places new elements below everything already in the diagram.

    Elements are laid out left to right and wrap to a new row once the next
    one would cross ``max_width``. A row is as tall as its tallest element.
    Trust boundaries get a fixed default size; nothing is resized to fit its
    contents. Asking twice for the same id returns the same position.
    """

    def __init__(self, existing_cells: Iterable[Cell] = (), max_width: float = DEFAULT_MAX_WIDTH,
                 gap: float = DEFAULT_GAP):
        self.max_width = max_width
        self.gap = gap
        self.next_x = START_X
        self.next_y = START_Y
        self.row_height = 0.0
        self._positions: dict[str, tuple[float, float]] = {}
        for cell in existing_cells:
            self.consider(cell)

    def consider(self, cell: Cell) -> None:
        """Move the start row below ``cell`` and widen the canvas to include it."""
        if cell.is_edge:
            # Attached endpoints follow the cells they connect; only loose ends occupy space.
            for terminal in (cell.source, cell.target):
                if terminal is None or terminal.is_connected:
                    continue
                if terminal.x is not None and terminal.y is not None:
                    self._extend(terminal.x, terminal.y)
            return
        if cell.position is None:
            return
        width = cell.size.width if cell.size else 0.0
        height = cell.size.height if cell.size else 0.0
        self._extend(cell.position.x + width, cell.position.y + height)

    def _extend(self, right: float, bottom: float) -> None:
        if bottom + self.gap > self.next_y:
            self.next_y = bottom + self.gap
            logger.debug(f'Start row moved to y={self.next_y}')
        if right > self.max_width:
            self.max_width = right
            logger.debug(f'Canvas width increased to {right}')

    def _allocate(self, element_id: str, width: float, height: float) -> tuple[float, float]:
        if element_id in self._positions:
            return self._positions[element_id]
        if self.next_x > START_X and self.next_x + width > self.max_width:
            self.next_x = START_X
            self.next_y += self.row_height + self.gap
            self.row_height = 0.0
        position = (self.next_x, self.next_y)
        self.next_x += width + self.gap
        self.row_height = max(self.row_height, height)
        self._positions[element_id] = position
        return position

    def get_position(self, asset_id: str) -> tuple[float, float]:
        return self._allocate(asset_id, *NODE_FOOTPRINT)

    def get_boundary_position(self, boundary_id: str) -> tuple[float, float, float, float]:
        x, y = self._allocate(boundary_id, *BOUNDARY_SIZE)
        return x, y, BOUNDARY_SIZE[0], BOUNDARY_SIZE[1]
