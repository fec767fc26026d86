"""Data Flow Diagram (DFD) preview of a merged threat model."""

from typing import Optional

from graphviz import Digraph

from .model import Asset, AssetType, DataSource, ThreatModel, ThreatStatus


class DFDGenerator:
    """Renders a ThreatModel as Graphviz DOT or Mermaid.

    Trust boundaries become clusters. An asset listed by several boundaries is
    drawn in the first one, since DOT clusters cannot share nodes.
    """

    ASSET_SHAPES = {
        AssetType.APPLICATION: 'ellipse',
        AssetType.DATABASE: 'cylinder',
        AssetType.WEBSERVER: 'component',
        AssetType.INFRASTRUCTURE: 'box3d',
    }

    SOURCE_COLORS = {
        DataSource.THREAT_DRAGON: '#cce5ff',
        DataSource.DOCKER_COMPOSE: '#d4edda',
        DataSource.MERGED: '#fff3cd',
    }

    def __init__(self, threat_model: ThreatModel, title: str = 'ThreatCat'):
        self.model = threat_model
        self.title = title
        self._asset_map = {asset.id: asset for asset in threat_model.assets}
        self._name_map = {asset.display_name: asset for asset in threat_model.assets}
        self._clusters = self._assign_clusters()

    def _assign_clusters(self) -> dict[Optional[str], list[Asset]]:
        """Map boundary id (None for no boundary) to the assets drawn inside it."""
        clusters: dict[Optional[str], list[Asset]] = {b.id: [] for b in self.model.boundaries}
        clusters[None] = []
        placed = set()
        for boundary in self.model.boundaries:
            for asset_id in boundary.contained_assets:
                asset = self._asset_map.get(asset_id)
                if asset is not None and asset_id not in placed:
                    clusters[boundary.id].append(asset)
                    placed.add(asset_id)
        clusters[None] = [a for a in self.model.assets if a.id not in placed]
        return clusters

    def _get_asset_shape(self, asset: Asset) -> str:
        return self.ASSET_SHAPES.get(asset.type, 'box')

    def _open_threats(self, asset: Asset) -> int:
        return sum(1 for t in asset.threats if t.status == ThreatStatus.OPEN)

    def _asset_label(self, asset: Asset) -> str:
        label = f'{asset.display_name}\n[{asset.type.name.title()}]'
        open_threats = self._open_threats(asset)
        if open_threats:
            label += f'\n{open_threats} open threat(s)'
        return label

    def _mermaid_id(self, value: str) -> str:
        safe = ''.join(ch if ch.isalnum() else '_' for ch in value.strip())
        if not safe:
            return 'NODE'
        if safe[0].isdigit():
            return f'N_{safe}'
        return safe

    def _add_node(self, graph: Digraph, asset: Asset) -> None:
        graph.node(
            asset.id,
            label=self._asset_label(asset),
            shape=self._get_asset_shape(asset),
            style='filled',
            fillcolor=self.SOURCE_COLORS.get(asset.source, 'white'),
            color='red' if self._open_threats(asset) else 'black',
        )

    def generate(self, output_format: str = 'svg') -> tuple[str, Digraph]:
        graph = Digraph(
            name='DFD',
            comment=f'Data Flow Diagram: {self.title}',
            format=output_format,
            engine='dot',
        )
        graph.attr(rankdir='LR', nodesep='0.8', ranksep='1.2', fontname='Arial', fontsize='12')
        graph.attr('node', fontname='Arial', fontsize='10')
        graph.attr('edge', fontname='Arial', fontsize='9')

        for boundary in self.model.boundaries:
            with graph.subgraph(name=f'cluster_{boundary.id}') as subgraph:
                subgraph.attr(
                    label=f'Trust Boundary: {boundary.display_name}',
                    style='dashed',
                    color='blue',
                    fontsize='11',
                    fontcolor='#333333',
                )
                for asset in self._clusters[boundary.id]:
                    self._add_node(subgraph, asset)
        for asset in self._clusters[None]:
            self._add_node(graph, asset)

        for flow in self.model.data_flows:
            source = self._name_map.get(flow.source)
            target = self._name_map.get(flow.target)
            if source is None or target is None:
                continue
            label = f'{flow.name}\n{flow.protocol}' if flow.protocol else flow.name
            edge_attrs = {
                'label': label,
                'color': 'red' if flow.public_network and not flow.encrypted else '#666666',
                'style': 'solid' if flow.encrypted else 'dashed',
            }
            if flow.bidirectional:
                edge_attrs['dir'] = 'both'
            graph.edge(source.id, target.id, **edge_attrs)

        return graph.source, graph

    def generate_dot(self) -> str:
        source, _ = self.generate()
        return source

    def render_to_file(self, output_path: str, output_format: str = 'svg') -> str:
        _, graph = self.generate(output_format)
        return graph.render(output_path, cleanup=True)

    def to_mermaid(self) -> str:
        lines = ['flowchart LR']
        for boundary in self.model.boundaries:
            lines.append(f'    subgraph {self._mermaid_id(boundary.id)}["{self._safe_label(boundary.display_name)}"]')
            for asset in self._clusters[boundary.id]:
                lines.append(f'        {self._mermaid_node(asset)}')
            lines.append('    end')
        for asset in self._clusters[None]:
            lines.append(f'    {self._mermaid_node(asset)}')

        for flow in self.model.data_flows:
            # Flows to assets outside the model have nothing to attach to
            source = self._name_map.get(flow.source)
            target = self._name_map.get(flow.target)
            if source is None or target is None:
                continue
            arrow = '<-->' if flow.bidirectional else '-->'
            if not flow.encrypted and not flow.bidirectional:
                arrow = '-.->'
            lines.append(
                f'    {self._mermaid_id(source.id)} {arrow}|{self._safe_label(flow.name)}| '
                f'{self._mermaid_id(target.id)}'
            )
        return '\n'.join(lines)

    def _mermaid_node(self, asset: Asset) -> str:
        opening, closing = self._mermaid_shape(asset.type)
        return f'{self._mermaid_id(asset.id)}{opening}"{self._safe_label(asset.display_name)}"{closing}'

    def _safe_label(self, text: str) -> str:
        """Escape special characters in Mermaid labels."""
        if not text:
            return ""
        return (text.replace('"', "'").replace('(', '').replace(')', '').replace('[', '')
                .replace(']', '').replace('|', '-').replace('<', '').replace('>', ''))

    def _mermaid_shape(self, asset_type: AssetType) -> tuple[str, str]:
        shapes = {
            AssetType.APPLICATION: ('((', '))'),
            AssetType.DATABASE: ('[(', ')]'),
            AssetType.WEBSERVER: ('[[', ']]'),
            AssetType.INFRASTRUCTURE: ('{{', '}}'),
        }
        return shapes.get(asset_type, ('[', ']'))
