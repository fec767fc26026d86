"""Tests for threatcat.synthesizer."""
import copy

import pytest

from threatcat.changelog import Changelog
from threatcat.identity import embed_tag, extract_tag
from threatcat.merger import ModelMerger
from threatcat.model import (
    THREAT_DRAGON_MODEL, Asset, AssetType, DataSource, Threat, ThreatModel, ThreatStatus,
    ThreatType, TrustBoundary, get_extra,
)
from threatcat.synthesizer import DEFAULT_MAX_STEPS, DiagramSynthesizer, cell_uuid
from threatcat.threatdragon import ThreatDragonInput, load_project, save_project

WEB_ID = '0f3c5e6a9b1d2c4e7f8a9b0c1d2e3f40'
WEB_CELL = 'a0c1d2e3-0000-4000-8000-000000000001'
DB_CELL = 'a0c1d2e3-0000-4000-8000-000000000002'
FLOW_CELL = 'c0c1d2e3-0000-4000-8000-000000000004'
TEXT_CELL = 'd0c1d2e3-0000-4000-8000-000000000005'


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _cells(project):
    return {cell.id: cell for cell in project.detail.diagrams[0].cells}


def _by_name(project, name):
    return next(c for c in project.detail.diagrams[0].cells if c.data.name == name)


@pytest.fixture()
def synthesizer(changelog) -> DiagramSynthesizer:
    return DiagramSynthesizer(changelog)


@pytest.fixture()
def diagram_model(threatdragon_file):
    return ThreatDragonInput(threatdragon_file).analyze()


# ---------------------------------------------------------------------------
# cell_uuid
# ---------------------------------------------------------------------------


class TestCellUuid:
    def test_hex_id_becomes_uuid(self):
        assert cell_uuid('a' * 32) == 'aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa'

    def test_other_ids_are_hashed(self):
        assert cell_uuid('not-hex') == cell_uuid('not-hex')
        assert len(cell_uuid('not-hex')) == 36


# ---------------------------------------------------------------------------
# New documents
# ---------------------------------------------------------------------------


class TestFreshDocument:
    def test_creates_cells(self, synthesizer, sample_model):
        project = synthesizer.generate(sample_model)
        cells = project.detail.diagrams[0].cells
        assert [c.data.type for c in cells] == ['tm.Process', 'tm.Store', 'tm.BoundaryBox', 'tm.Flow']

    def test_cells_carry_identity_tags(self, synthesizer, sample_model):
        project = synthesizer.generate(sample_model)
        tags = [extract_tag(c.data.description) for c in project.detail.diagrams[0].cells]
        assert tags == ['a' * 32, 'b' * 32, 'd' * 32, 'c' * 32]

    def test_grid_layout(self, synthesizer, sample_model):
        project = synthesizer.generate(sample_model)
        web = _by_name(project, 'web')
        db = _by_name(project, 'db')
        boundary = _by_name(project, 'backend')
        assert (web.position.x, web.position.y) == (50.0, 50.0)
        assert (db.position.x, db.position.y) == (50.0, 150.0)
        assert (boundary.position.x, boundary.position.y) == (40.0, 40.0)
        assert (boundary.size.width, boundary.size.height) == (420.0, 220.0)
        assert boundary.zIndex == -1

    def test_flow_connects_asset_cells(self, synthesizer, sample_model):
        project = synthesizer.generate(sample_model)
        flow = _by_name(project, 'Orders')
        assert flow.source.cell == _by_name(project, 'web').id
        assert flow.target.cell == _by_name(project, 'db').id
        assert flow.labels == ['Orders']
        assert flow.data.protocol == 'postgres'
        assert flow.data.isEncrypted is True

    def test_changelog(self, synthesizer, sample_model, changelog):
        synthesizer.generate(sample_model)
        assert changelog.entries == [
            "Added asset 'web' to the diagram.",
            "Added asset 'db' to the diagram.",
            "Added trust boundary 'backend' to the diagram.",
            "Added data flow 'Orders' from 'web' to 'db'.",
        ]

    def test_falls_back_to_row_layout(self, changelog, sample_model):
        project = DiagramSynthesizer(changelog, max_steps=1).generate(sample_model)
        web = _by_name(project, 'web')
        db = _by_name(project, 'db')
        assert (web.position.x, web.position.y) == (50.0, 50.0)
        assert (db.position.x, db.position.y) == (250.0, 50.0)

    def test_overfull_boundary_falls_back(self, synthesizer):
        assets = [Asset(id=f'{i:032x}', display_name=f'svc{i}') for i in range(18)]
        model = ThreatModel(
            assets=assets,
            boundaries=[TrustBoundary(id='d' * 32, display_name='backend',
                                      contained_assets=[a.id for a in assets[:17]])],
        )
        project = synthesizer.generate(model)
        cells = project.detail.diagrams[0].cells
        assert sum(c.data.type == 'tm.Process' for c in cells) == 18
        first = _by_name(project, 'svc0')
        assert (first.position.x, first.position.y) == (50.0, 50.0)

    def test_grid_search_is_bounded_by_default(self, changelog):
        assert DiagramSynthesizer(changelog).max_steps == DEFAULT_MAX_STEPS

    def test_new_threats_are_numbered(self, synthesizer, sample_model):
        sample_model.assets[0].threats.append(Threat(
            internal_id='e' * 32, id='t1', title='Replay', type=ThreatType.SPOOFING,
            source=DataSource.DOCKER_COMPOSE,
        ))
        project = synthesizer.generate(sample_model)
        threat = _by_name(project, 'web').data.threats[0]
        assert threat.number == 1
        assert threat.id == cell_uuid('e' * 32)
        assert threat.severity == 'Medium'
        assert threat.status == 'Open'
        assert threat.description == embed_tag('e' * 32)
        assert project.detail.threatTop == 1
        assert _by_name(project, 'web').data.hasOpenThreats is True

    def test_user_elements_are_not_tagged(self, synthesizer, sample_model):
        sample_model.assets[1].is_generated_by_user = True
        project = synthesizer.generate(sample_model)
        assert _by_name(project, 'db').data.description == ''

    def test_flow_to_unknown_asset_is_skipped(self, synthesizer, sample_model):
        sample_model.data_flows[0].target = 'nowhere'
        project = synthesizer.generate(sample_model)
        assert all(c.data.type != 'tm.Flow' for c in project.detail.diagrams[0].cells)


# ---------------------------------------------------------------------------
# Existing documents
# ---------------------------------------------------------------------------


class TestRoundTrip:
    def test_unchanged_model_gives_equivalent_document(self, synthesizer, diagram_model, changelog):
        original = get_extra(diagram_model.extra, THREAT_DRAGON_MODEL).to_dict()
        project = synthesizer.generate(diagram_model)
        assert project.to_dict() == original
        assert changelog.entries == []

    def test_input_document_is_not_modified(self, synthesizer, diagram_model):
        original = copy.deepcopy(get_extra(diagram_model.extra, THREAT_DRAGON_MODEL).to_dict())
        diagram_model.assets[0].display_name = 'frontend'
        synthesizer.generate(diagram_model)
        assert get_extra(diagram_model.extra, THREAT_DRAGON_MODEL).to_dict() == original

    def test_regenerating_is_stable(self, sample_model, tmp_path):
        first = DiagramSynthesizer(Changelog()).generate(sample_model)
        path = save_project(first, tmp_path / 'model.json')

        changelog = Changelog()
        compose_model = copy.deepcopy(sample_model)
        diagram_model = ThreatDragonInput(path).analyze()
        merged = ModelMerger(changelog).merge([compose_model, diagram_model])
        second = DiagramSynthesizer(changelog).generate(merged)

        assert second.to_dict() == load_project(path).to_dict()
        assert changelog.entries == []


class TestUpdate:
    def test_rename_keeps_position(self, synthesizer, diagram_model):
        diagram_model.assets[0].display_name = 'frontend'
        project = synthesizer.generate(diagram_model)
        web = _cells(project)[WEB_CELL]
        assert web.data.name == 'frontend'
        assert web.attrs['text']['text'] == 'frontend'
        assert (web.position.x, web.position.y) == (100.0, 100.0)
        assert web.attrs['body']['stroke'] == 'red'

    def test_flow_endpoint_follows_rename(self, synthesizer, diagram_model):
        diagram_model.assets[0].display_name = 'frontend'
        diagram_model.data_flows[0].source = 'frontend'
        project = synthesizer.generate(diagram_model)
        assert _cells(project)[FLOW_CELL].source.cell == WEB_CELL

    def test_type_change_switches_shape(self, synthesizer, diagram_model):
        diagram_model.assets[0].type = AssetType.DATABASE
        project = synthesizer.generate(diagram_model)
        web = _cells(project)[WEB_CELL]
        assert web.shape == 'store'
        assert web.data.type == 'tm.Store'

    def test_flow_attributes(self, synthesizer, diagram_model):
        flow = diagram_model.data_flows[0]
        flow.protocol = 'tls'
        flow.bidirectional = True
        project = synthesizer.generate(diagram_model)
        cell = _cells(project)[FLOW_CELL]
        assert cell.data.protocol == 'tls'
        assert cell.data.isBidirectional is True
        assert cell.attrs['line']['sourceMarker'] == {'name': 'block'}

    def test_new_asset_goes_below_existing_cells(self, synthesizer, diagram_model, changelog):
        diagram_model.assets.append(Asset(id='9' * 32, display_name='cache',
                                          type=AssetType.INFRASTRUCTURE,
                                          source=DataSource.DOCKER_COMPOSE))
        project = synthesizer.generate(diagram_model)
        cache = _by_name(project, 'cache')
        assert (cache.position.x, cache.position.y) == (50.0, 530.0)
        assert cache.zIndex == 5
        assert "Added asset 'cache' to the diagram." in changelog.entries

    def test_user_cell_stays_untagged(self, synthesizer, diagram_model):
        project = synthesizer.generate(diagram_model)
        assert _cells(project)[DB_CELL].data.description == ''

    def test_unmanaged_cells_are_kept(self, synthesizer, diagram_model):
        diagram_model.assets.pop(0)
        project = synthesizer.generate(diagram_model)
        assert TEXT_CELL in _cells(project)


class TestThreatSync:
    def test_status_update(self, synthesizer, diagram_model):
        diagram_model.assets[0].threats[0].status = ThreatStatus.MITIGATED
        project = synthesizer.generate(diagram_model)
        web = _cells(project)[WEB_CELL]
        assert web.data.threats[0].status == 'Mitigated'
        # the unsupported threat is still open
        assert web.data.hasOpenThreats is True

    def test_unsupported_threat_is_preserved(self, synthesizer, diagram_model, changelog):
        diagram_model.assets[0].threats = []
        project = synthesizer.generate(diagram_model)
        threats = _cells(project)[WEB_CELL].data.threats
        assert [t.title for t in threats] == ['Linkability of requests']
        assert threats[0].modelType == 'LINDDUN'
        assert changelog.entries == ["Removed threat 'Session hijacking' from 'web'."]

    def test_new_threat_is_appended(self, synthesizer, diagram_model):
        diagram_model.assets[0].threats.append(Threat(
            internal_id='e' * 32, id='new', title='Token theft', type=ThreatType.SPOOFING,
        ))
        project = synthesizer.generate(diagram_model)
        threats = _cells(project)[WEB_CELL].data.threats
        assert [t.title for t in threats] == ['Session hijacking', 'Linkability of requests',
                                              'Token theft']
        assert threats[2].number == 3
        assert project.detail.threatTop == 3


class TestRemoval:
    def test_removed_asset_takes_its_flows(self, synthesizer, diagram_model, changelog):
        diagram_model.assets.pop(0)
        project = synthesizer.generate(diagram_model)
        cells = _cells(project)
        assert WEB_CELL not in cells
        assert FLOW_CELL not in cells
        assert changelog.entries == [
            "Removed 'Orders' from diagram 'Main' because one of its endpoints was removed."
        ]

    def test_removed_boundary(self, synthesizer, diagram_model, changelog):
        diagram_model.boundaries = []
        project = synthesizer.generate(diagram_model)
        assert all(c.data.type != 'tm.BoundaryBox' for c in project.detail.diagrams[0].cells)
        assert changelog.entries == []

    def test_one_entry_per_removed_element(self, synthesizer, diagram_model, changelog):
        merged = ModelMerger(changelog).merge([diagram_model, ThreatModel()])
        project = synthesizer.generate(merged)
        cells = _cells(project)
        assert WEB_CELL not in cells and FLOW_CELL not in cells
        assert sum("'web'" in entry for entry in changelog.entries) == 1
        assert sum("'Orders'" in entry for entry in changelog.entries) == 1
        assert sum("'internal'" in entry for entry in changelog.entries) == 1

    def test_user_cells_are_never_removed(self, synthesizer, diagram_model):
        diagram_model.assets.pop(1)
        project = synthesizer.generate(diagram_model)
        assert DB_CELL in _cells(project)
