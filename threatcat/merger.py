"""Reconciles the threat models produced by every input into one model."""

import logging
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional, TypeVar

from .changelog import ChangelogSink
from .model import (
    Asset, AssetType, DataFlow, DataSource, Threat, ThreatModel,
    ThreatStatus, TrustBoundary,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Source priorities, highest first.
ASSET_NAME_PRIORITY = (
    DataSource.MERGED, DataSource.THREAT_DRAGON, DataSource.DOCKER_COMPOSE, DataSource.UNKNOWN,
)
ASSET_TYPE_PRIORITY = (DataSource.DOCKER_COMPOSE, DataSource.THREAT_DRAGON, DataSource.UNKNOWN)
THREAT_PRIORITY = (
    DataSource.THREAT_DRAGON, DataSource.DOCKER_COMPOSE, DataSource.UNKNOWN, DataSource.MERGED,
)
BOUNDARY_NAME_PRIORITY = (DataSource.THREAT_DRAGON, DataSource.DOCKER_COMPOSE, DataSource.UNKNOWN)
FLOW_NAME_PRIORITY = (DataSource.THREAT_DRAGON, DataSource.DOCKER_COMPOSE, DataSource.UNKNOWN)
FLOW_ATTRIBUTE_PRIORITY = (DataSource.DOCKER_COMPOSE, DataSource.UNKNOWN, DataSource.THREAT_DRAGON)

# Order in which extras are applied; later entries win key collisions.
EXTRA_APPLY_ORDER = (
    DataSource.UNKNOWN, DataSource.DOCKER_COMPOSE, DataSource.THREAT_DRAGON, DataSource.MERGED,
)


class MergeError(Exception):
    """Raised when the merger is asked to fuse an empty group."""
    pass


def first_by_priority(
    items: Iterable[T], priority: Iterable[DataSource], source_of: Callable[[T], DataSource]
) -> Optional[T]:
    """Return the first item whose source comes first in ``priority``."""
    items = list(items)
    for source in priority:
        for item in items:
            if source_of(item) == source:
                return item
    return None


def merge_extras(members: Iterable[T], source_of: Callable[[T], DataSource],
                 extra_of: Callable[[T], dict[str, Any]]) -> dict[str, Any]:
    rank = {source: index for index, source in enumerate(EXTRA_APPLY_ORDER)}
    merged: dict[str, Any] = {}
    for member in sorted(members, key=lambda m: rank.get(source_of(m), 0)):
        merged.update(extra_of(member))
    return merged


def group_by_id(items: Iterable[T]) -> dict[str, list[T]]:
    groups: dict[str, list[T]] = {}
    for item in items:
        groups.setdefault(item.id, []).append(item)
    return groups


class ModelMerger:
    """Merges threat models keyed by element id.

    Every element that disappears from its origin is reported to the
    changelog: assets, boundaries and data flows are removed, threats are
    kept and marked as mitigated.
    """

    def __init__(self, changelog: ChangelogSink):
        self.changelog = changelog

    def merge(self, models: list[ThreatModel]) -> ThreatModel:
        if not models:
            logger.debug('No models received for merging. Returning empty model.')
            return ThreatModel.empty()
        if len(models) == 1:
            logger.debug('One model received for merging. Returning it unchanged.')
            return models[0]
        logger.debug(f'Merging {len(models)} models')
        return self._merge_models(models)

    def _merge_models(self, models: list[ThreatModel]) -> ThreatModel:
        asset_groups = group_by_id(asset for model in models for asset in model.assets)
        flow_groups = group_by_id(flow for model in models for flow in model.data_flows)
        boundary_groups = group_by_id(boundary for model in models for boundary in model.boundaries)
        logger.debug(
            f'Grouped by id: {len(asset_groups)} assets, {len(flow_groups)} data flows, '
            f'{len(boundary_groups)} boundaries'
        )

        assets = []
        for asset_id, group in asset_groups.items():
            if len(group) > 1:
                logger.debug(f'Asset {asset_id}: {len(group)} instances, fusing')
                assets.append(self.merge_assets(group))
            elif group[0].is_generated_by_user or group[0].source != DataSource.THREAT_DRAGON:
                logger.debug(f'Asset {asset_id}: found in a single source, keeping')
                assets.append(group[0])
            else:
                logger.debug(f'Asset {asset_id}: no longer found in its original source, removing')
                self.changelog.add_entry(
                    f"Removed asset '{group[0].display_name}' that was no longer found in its original source."
                )
        assets.sort(key=lambda a: a.id)
        asset_ids = {asset.id for asset in assets}

        boundaries = []
        for boundary_id, group in boundary_groups.items():
            if len(group) > 1:
                logger.debug(f'Boundary {boundary_id}: {len(group)} instances, fusing')
                boundaries.append(self.merge_boundaries(group, asset_ids))
            elif group[0].is_generated_by_user or group[0].source != DataSource.THREAT_DRAGON:
                logger.debug(f'Boundary {boundary_id}: found in a single source, keeping')
                boundaries.append(replace(
                    group[0],
                    contained_assets=[a for a in group[0].contained_assets if a in asset_ids],
                ))
            else:
                logger.debug(f'Boundary {boundary_id}: no longer found in its original source, removing')
                self.changelog.add_entry(
                    f"Removed trust boundary '{group[0].display_name}' that was no longer found in its original source."
                )
        boundaries.sort(key=lambda b: b.id)

        flows = []
        for flow_id, group in flow_groups.items():
            if len(group) > 1:
                logger.debug(f'Data flow {flow_id}: {len(group)} instances, fusing')
                flows.append(self.merge_data_flows(group))
            elif group[0].is_generated_by_user or group[0].origin != DataSource.THREAT_DRAGON:
                flows.append(group[0])
            else:
                logger.debug(f'Data flow {flow_id}: no longer found in its original source, removing')
                self.changelog.add_entry(
                    f"Removed data flow '{group[0].name}' that was no longer found in its original source."
                )

        extra: dict[str, Any] = {}
        for model in models:
            extra.update(model.extra)
        logger.info(
            f'Merged model: {len(assets)} assets, {len(flows)} data flows, {len(boundaries)} boundaries'
        )
        return ThreatModel(assets=assets, data_flows=flows, boundaries=boundaries, extra=extra)

    def merge_assets(self, group: list[Asset]) -> Asset:
        if not group:
            raise MergeError('No assets to merge')
        if len(group) == 1:
            return group[0]

        name_source = first_by_priority(group, ASSET_NAME_PRIORITY, lambda a: a.source)
        type_source = first_by_priority(group, ASSET_TYPE_PRIORITY, lambda a: a.source)
        return Asset(
            id=group[0].id,
            display_name=name_source.display_name if name_source else '',
            type=type_source.type if type_source else AssetType.UNKNOWN,
            threats=self.merge_threats(group),
            source=DataSource.MERGED,
            is_generated_by_user=any(a.is_generated_by_user for a in group),
            extra=merge_extras(group, lambda a: a.source, lambda a: a.extra),
        )

    def merge_threats(self, group: list[Asset]) -> list[Threat]:
        """Pick one representative per threat id across the assets of a group.

        Unsupported threats are left out here; the synthesizer keeps them in
        the diagram untouched.
        """
        by_id: dict[str, list[Threat]] = {}
        for asset in group:
            for threat in asset.threats:
                if threat.is_supported:
                    by_id.setdefault(threat.id, []).append(threat)

        rank = {source: index for index, source in enumerate(THREAT_PRIORITY)}
        merged = []
        for threats in by_id.values():
            threats = sorted(threats, key=lambda t: rank.get(t.source, len(rank)))
            selected = threats[0]
            if (len(threats) == 1 and selected.source == DataSource.THREAT_DRAGON
                    and not selected.is_generated_by_user
                    and selected.status != ThreatStatus.MITIGATED):
                logger.debug(f"Threat '{selected.label}' no longer confirmed by its source, marking mitigated")
                self.changelog.add_entry(
                    f"Threat '{selected.label}' was not found in the original source anymore. "
                    f"Therefore it will be marked as mitigated"
                )
                selected = replace(selected, status=ThreatStatus.MITIGATED)
            merged.append(selected)
        return merged

    def merge_boundaries(self, group: list[TrustBoundary], asset_ids: set[str]) -> TrustBoundary:
        if not group:
            raise MergeError('No boundaries to merge')

        name_source = first_by_priority(group, BOUNDARY_NAME_PRIORITY, lambda b: b.source)
        contained: list[str] = []
        for boundary in group:
            for asset_id in boundary.contained_assets:
                if asset_id in asset_ids and asset_id not in contained:
                    contained.append(asset_id)

        return TrustBoundary(
            id=group[0].id,
            display_name=(name_source or group[0]).display_name,
            contained_assets=contained,
            source=DataSource.MERGED,
            is_generated_by_user=any(b.is_generated_by_user for b in group),
            extra=merge_extras(group, lambda b: b.source, lambda b: b.extra),
        )

    def merge_data_flows(self, group: list[DataFlow]) -> DataFlow:
        """Fuse flows sharing an id.

        The diagram owns the name; the technical attributes come from the
        sources that describe the deployment.
        """
        if not group:
            raise MergeError('No data flows to merge')
        if len(group) == 1:
            return group[0]

        name_source = first_by_priority(group, FLOW_NAME_PRIORITY, lambda f: f.origin) or group[0]
        attributes = first_by_priority(group, FLOW_ATTRIBUTE_PRIORITY, lambda f: f.origin) or group[0]
        return DataFlow(
            id=group[0].id,
            name=name_source.name,
            source=attributes.source,
            target=attributes.target,
            protocol=attributes.protocol,
            encrypted=attributes.encrypted,
            public_network=attributes.public_network,
            bidirectional=attributes.bidirectional,
            origin=DataSource.MERGED,
            is_generated_by_user=any(f.is_generated_by_user for f in group),
            extra=merge_extras(group, lambda f: f.origin, lambda f: f.extra),
        )
