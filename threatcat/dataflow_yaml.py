"""Data flows declared in a standalone YAML file."""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .identity import generate_id
from .model import DataFlow, DataSource, ThreatModel

logger = logging.getLogger(__name__)


class DataflowYamlError(Exception):
    """Raised when the data flow file cannot be read or is invalid."""
    pass


class DataflowEntry(BaseModel):
    name: str = ''
    protocol: str = ''
    encrypted: bool = False
    publicnetwork: bool = False
    source: str = ''
    target: str = ''
    bidirectional: bool = False


class DataflowFile(BaseModel):
    dataflows: list[DataflowEntry] = Field(default_factory=list)


class DataflowYamlParser:
    """Parses ``dataflows:`` entries into a model holding only data flows."""

    def __init__(self, file_path: str | Path):
        self.file_path = str(file_path)

    def _load(self) -> DataflowFile:
        path = Path(self.file_path)
        logger.debug(f'Opening dataflows file {path}')
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = yaml.safe_load(f)
        except OSError as e:
            raise DataflowYamlError(f"Cannot read dataflows file {path}: {e}")
        except yaml.YAMLError as e:
            raise DataflowYamlError(f"YAML parse error in {path}: {e}")
        try:
            return DataflowFile.model_validate(content or {})
        except ValidationError as e:
            raise DataflowYamlError(f"Invalid dataflows file {path}: {e}")

    @staticmethod
    def validate(entries: list[DataflowEntry]) -> None:
        seen = set()
        for entry in entries:
            if not entry.name:
                raise DataflowYamlError('dataflow name must not be empty')
            if entry.name in seen:
                raise DataflowYamlError(f'duplicate dataflow name: {entry.name}')
            seen.add(entry.name)

    def parse_and_convert(self) -> ThreatModel:
        entries = self._load().dataflows
        self.validate(entries)

        model = ThreatModel.empty()
        for entry in entries:
            model.data_flows.append(DataFlow(
                id=generate_id(self.file_path, entry.name),
                name=entry.name,
                source=entry.source,
                target=entry.target,
                protocol=entry.protocol,
                encrypted=entry.encrypted,
                public_network=entry.publicnetwork,
                bidirectional=entry.bidirectional,
                origin=DataSource.UNKNOWN,
            ))
        logger.info(f'Read {len(model.data_flows)} data flows from {self.file_path}')
        return model
