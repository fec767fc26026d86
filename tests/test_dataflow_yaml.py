"""Tests for threatcat.dataflow_yaml."""
import pytest

from threatcat.dataflow_yaml import DataflowEntry, DataflowYamlError, DataflowYamlParser
from threatcat.identity import generate_id
from threatcat.model import DataSource


class TestParse:
    def test_entries_become_flows(self, dataflows_file):
        model = DataflowYamlParser(dataflows_file).parse_and_convert()
        assert model.assets == [] and model.boundaries == []
        backups, metrics = model.data_flows
        assert backups.name == 'Backups'
        assert (backups.source, backups.target) == ('db', 'storage')
        assert backups.protocol == 's3'
        assert backups.encrypted and backups.public_network and not backups.bidirectional
        assert metrics.bidirectional
        assert not metrics.encrypted

    def test_ids_and_origin(self, dataflows_file):
        flow = DataflowYamlParser(dataflows_file).parse_and_convert().data_flows[0]
        assert flow.id == generate_id(str(dataflows_file), 'Backups')
        assert flow.origin == DataSource.UNKNOWN

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'dataflows.yml'
        path.write_text('', encoding='utf-8')
        assert DataflowYamlParser(path).parse_and_convert().data_flows == []


class TestErrors:
    def test_duplicate_names(self):
        entries = [DataflowEntry(name='Sync'), DataflowEntry(name='Sync')]
        with pytest.raises(DataflowYamlError, match='duplicate dataflow name: Sync'):
            DataflowYamlParser.validate(entries)

    def test_empty_name(self, tmp_path):
        path = tmp_path / 'dataflows.yml'
        path.write_text('dataflows:\n  - protocol: http\n', encoding='utf-8')
        with pytest.raises(DataflowYamlError, match='must not be empty'):
            DataflowYamlParser(path).parse_and_convert()

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / 'dataflows.yml'
        path.write_text('dataflows: {name: x}\n', encoding='utf-8')
        with pytest.raises(DataflowYamlError, match='Invalid dataflows file'):
            DataflowYamlParser(path).parse_and_convert()

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / 'dataflows.yml'
        path.write_text('dataflows: [\n', encoding='utf-8')
        with pytest.raises(DataflowYamlError, match='YAML parse error'):
            DataflowYamlParser(path).parse_and_convert()

    def test_missing_file(self, tmp_path):
        with pytest.raises(DataflowYamlError, match='Cannot read'):
            DataflowYamlParser(tmp_path / 'missing.yml').parse_and_convert()
