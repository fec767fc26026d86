"""Validated options of a generate run."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _input_file(value: str) -> str:
    path = Path(value)
    if not value or not path.exists() or path.is_dir():
        raise ValueError(f'input file does not exist or is a directory: {value}')
    return value


def _output_file(value: str) -> str:
    path = Path(value)
    if not value or path.is_dir():
        raise ValueError(f'output path is a directory: {value}')
    if path.exists() and not os.access(path, os.W_OK):
        raise ValueError(f'output file is not writable: {value}')
    return value


class RunOptions(BaseModel):
    """Everything the ``generate`` command needs, checked before any work starts."""
    dockercompose: list[str] = Field(default_factory=list)
    threatdragon: list[str] = Field(default_factory=list)
    dataflows: list[str] = Field(default_factory=list)
    output: str = 'out.json'
    changelog: Optional[str] = None
    imagemap: Optional[str] = None
    verbose: bool = False
    logfile: Optional[str] = None
    silent: bool = False

    @field_validator('dockercompose', 'threatdragon', 'dataflows')
    @classmethod
    def validate_inputs(cls, v: list[str]) -> list[str]:
        return [_input_file(item) for item in v]

    @field_validator('imagemap')
    @classmethod
    def validate_imagemap(cls, v: Optional[str]) -> Optional[str]:
        return _input_file(v) if v else None

    @field_validator('output')
    @classmethod
    def validate_output(cls, v: str) -> str:
        return _output_file(v)

    @field_validator('logfile', 'changelog')
    @classmethod
    def validate_optional_output(cls, v: Optional[str]) -> Optional[str]:
        return _output_file(v) if v else None

    @model_validator(mode='after')
    def require_input(self) -> 'RunOptions':
        if not (self.dockercompose or self.threatdragon or self.dataflows):
            raise ValueError('at least one input file must be provided')
        return self

    def summary_rows(self) -> list[tuple[str, str]]:
        rows = [
            ('verbose mode', str(self.verbose).lower()),
            ('silent mode', str(self.silent).lower()),
            ('log file path', self.logfile or ''),
            ('output file path', self.output),
            ('docker image config file', self.imagemap or ''),
            ('changelog path', self.changelog or ''),
        ]
        rows.extend(('docker compose file', p) for p in self.dockercompose)
        rows.extend(('threat dragon file', p) for p in self.threatdragon)
        rows.extend(('dataflow file', p) for p in self.dataflows)
        return rows
