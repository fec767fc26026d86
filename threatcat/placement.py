"""Placement capability shared by the layout strategies."""

from typing import Protocol


class PlacementError(Exception):
    """Base class for layout failures."""
    pass


class BoxPlacementError(PlacementError):
    """No arrangement of trust boundaries satisfies the memberships."""
    pass


class NodePlacementError(PlacementError):
    """A node has no grid cell consistent with the placed boxes."""
    pass


class NodeAssignmentError(PlacementError):
    """Nodes cannot be assigned to pairwise distinct cells."""
    pass


class PlacementBudgetExceededError(PlacementError):
    """The search ran out of its step budget."""
    pass


class UnknownElementError(PlacementError):
    """A position was requested for an id the strategy never placed."""
    pass


class PlacementStrategy(Protocol):
    """Source of pixel coordinates for new diagram elements."""

    def get_position(self, asset_id: str) -> tuple[float, float]:
        """Top left corner of an asset."""
        ...

    def get_boundary_position(self, boundary_id: str) -> tuple[float, float, float, float]:
        """``(x, y, width, height)`` of a trust boundary."""
        ...
