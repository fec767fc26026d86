"""Shared test fixtures for threatcat.

Fixtures defined here are available to all tests in the suite without
needing an explicit import.
"""
import logging
import shutil
from pathlib import Path

import pytest

from threatcat.changelog import Changelog
from threatcat.model import (
    Asset, AssetType, DataFlow, DataSource, ThreatModel, TrustBoundary,
)

DATA_DIR = Path(__file__).parent / 'data'


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers a CLI test may have installed on the package logger."""
    yield
    logger = logging.getLogger('threatcat')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture()
def data_dir() -> Path:
    return DATA_DIR


@pytest.fixture()
def threatdragon_file(tmp_path) -> Path:
    """A writable copy of the sample ThreatDragon document."""
    target = tmp_path / 'model.json'
    shutil.copy(DATA_DIR / 'threatdragon_model.json', target)
    return target


@pytest.fixture()
def compose_file(tmp_path) -> Path:
    target = tmp_path / 'docker-compose.yml'
    shutil.copy(DATA_DIR / 'docker-compose.yml', target)
    return target


@pytest.fixture()
def dataflows_file(tmp_path) -> Path:
    target = tmp_path / 'dataflows.yml'
    shutil.copy(DATA_DIR / 'dataflows.yml', target)
    return target


@pytest.fixture()
def imagemap_file() -> Path:
    return DATA_DIR / 'imagemap.yml'


@pytest.fixture()
def changelog() -> Changelog:
    return Changelog()


@pytest.fixture()
def sample_model() -> ThreatModel:
    """Two assets in one boundary connected by a flow, as a compose file would yield."""
    web = Asset(id='a' * 32, display_name='web', type=AssetType.APPLICATION,
                source=DataSource.DOCKER_COMPOSE)
    db = Asset(id='b' * 32, display_name='db', type=AssetType.DATABASE,
               source=DataSource.DOCKER_COMPOSE)
    return ThreatModel(
        assets=[web, db],
        data_flows=[DataFlow(id='c' * 32, name='Orders', source='web', target='db',
                             protocol='postgres', encrypted=True,
                             origin=DataSource.DOCKER_COMPOSE)],
        boundaries=[TrustBoundary(id='d' * 32, display_name='backend',
                                  contained_assets=[web.id, db.id],
                                  source=DataSource.DOCKER_COMPOSE)],
    )
