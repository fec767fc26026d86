"""ThreatCat - Command Line Interface."""

import logging
import sys
from pathlib import Path
from typing import Callable, Optional

import click
from pydantic import ValidationError

from . import __version__
from .changelog import Changelog, ChangelogSink, NullChangelog
from .config import RunOptions
from .dataflow_yaml import DataflowYamlError, DataflowYamlParser
from .dfd_generator import DFDGenerator
from .dockercompose import DockerComposeAnalyzer, DockerComposeParseError, DockerImageMap
from .logging_setup import configure_logging
from .merger import MergeError, ModelMerger
from .model import ExtraError, ThreatModel
from .placement import PlacementError
from .synthesizer import DiagramSynthesizer
from .threatdragon import ThreatDragonInput, ThreatDragonParseError, save_project

logger = logging.getLogger(__name__)

RUN_ERRORS = (
    ThreatDragonParseError, DockerComposeParseError, DataflowYamlError,
    MergeError, PlacementError, ExtraError, OSError,
)

CHANGELOG_SEPARATOR = '_______________'


def _fail(message: str) -> None:
    click.echo(click.style(message, fg='red'), err=True)
    sys.exit(1)


def analyze_inputs(dockercompose: list[str], threatdragon: list[str], dataflows: list[str],
                   image_map: DockerImageMap) -> list[ThreatModel]:
    """Analyze every input file into its own ThreatModel, in the order given."""
    models = []
    for path in dockercompose:
        logger.info(f'Parsing and analyzing docker-compose file {path}')
        models.append(DockerComposeAnalyzer(path, image_map).analyze())
    for path in threatdragon:
        logger.info(f'Parsing and analyzing ThreatDragon file {path}')
        models.append(ThreatDragonInput(path).analyze())
    for path in dataflows:
        logger.info(f'Parsing dataflow file {path}')
        models.append(DataflowYamlParser(path).parse_and_convert())
    return models


def merge_inputs(options: RunOptions, changelog: ChangelogSink,
                 progress: Callable[[str], None] = lambda message: None) -> ThreatModel:
    """Load the image map, analyze every input and merge the results."""
    progress('[2/7] Handle config files')
    image_map = DockerImageMap.load(options.imagemap)

    progress('[3/7] Parse and analyze input files')
    models = analyze_inputs(options.dockercompose, options.threatdragon, options.dataflows, image_map)

    progress('[4/7] Merging models')
    return ModelMerger(changelog).merge(models)


@click.group()
@click.version_option(version=__version__)
def cli():
    """ThreatCat - keeps ThreatDragon threat models in sync with your deployment."""
    pass


def input_options(func):
    func = click.option('--dataflows', '-y', multiple=True, type=click.Path(),
                        help='Dataflow YAML input file')(func)
    func = click.option('--threatdragon', '-t', multiple=True, type=click.Path(),
                        help='ThreatDragon input file')(func)
    func = click.option('--dockercompose', '-d', multiple=True, type=click.Path(),
                        help='Docker Compose input file')(func)
    func = click.option('--imagemap', '-i', type=click.Path(),
                        help='Docker image map config file')(func)
    return func


@cli.command()
@input_options
@click.option('--output', '-o', default='out.json', type=click.Path(), help='Output ThreatDragon file')
@click.option('--changelog', '-c', 'changelog_path', type=click.Path(), help='Changelog file to prepend to')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--logfile', '-f', type=click.Path(), help='Log file path')
@click.option('--silent', '-s', is_flag=True, help='Suppress console output')
def generate(dockercompose, threatdragon, dataflows, imagemap, output, changelog_path,
             verbose, logfile, silent):
    """Merge the inputs and write the ThreatDragon model."""
    try:
        options = RunOptions(
            dockercompose=list(dockercompose),
            threatdragon=list(threatdragon),
            dataflows=list(dataflows),
            output=output,
            changelog=changelog_path,
            imagemap=imagemap,
            verbose=verbose,
            logfile=logfile,
            silent=silent,
        )
    except ValidationError as e:
        _fail(f'Invalid arguments: {e}')
        return

    def step(message: str) -> None:
        if not options.silent:
            click.echo(message)

    if not options.silent:
        click.echo('-' * 71)
        for name, value in options.summary_rows():
            click.echo(f'{name:<24} | {value}')
        click.echo('-' * 71)

    step('[1/7] Set up logging')
    try:
        configure_logging(options.verbose, options.logfile, options.silent)
    except OSError as e:
        _fail(f'Could not set up logging: {e}')

    try:
        changelog = Changelog()
        merged = merge_inputs(options, changelog, progress=step)

        step('[5/7] Generating output model')
        project = DiagramSynthesizer(changelog).generate(merged)
        save_project(project, options.output)

        step('[6/7] Generating changelog')
        if options.changelog:
            changelog.add_entry(CHANGELOG_SEPARATOR)
            changelog.output_to(options.changelog)
    except RUN_ERRORS as e:
        logger.error(f'Generation failed: {e}')
        _fail(f'Generation failed: {e}')

    step('[7/7] Done!')
    if not options.silent:
        click.echo(click.style(f'Threat model written to {options.output}', fg='green'))


@cli.command()
@input_options
@click.option('--format', 'output_format', type=click.Choice(['dot', 'mermaid']), default='mermaid')
@click.option('--output', '-o', type=click.Path(), help='Output file path')
def preview(dockercompose, threatdragon, dataflows, imagemap, output_format, output: Optional[str]):
    """Show the merged model as a data flow diagram without writing anything else."""
    try:
        options = RunOptions(
            dockercompose=list(dockercompose),
            threatdragon=list(threatdragon),
            dataflows=list(dataflows),
            imagemap=imagemap,
        )
        merged = merge_inputs(options, NullChangelog())
    except ValidationError as e:
        _fail(f'Invalid arguments: {e}')
        return
    except RUN_ERRORS as e:
        _fail(f'Preview failed: {e}')
        return

    if not merged.assets:
        click.echo(click.style('No assets found in the inputs.', fg='yellow'))
        return

    generator = DFDGenerator(merged)
    rendered = generator.to_mermaid() if output_format == 'mermaid' else generator.generate_dot()
    if output:
        Path(output).write_text(rendered, encoding='utf-8')
        click.echo(click.style(f'DFD generated: {output}', fg='green'))
    else:
        click.echo(rendered)


@cli.command()
@click.argument('model_path', type=click.Path(exists=True, dir_okay=False))
def validate(model_path: str):
    """Validate a ThreatDragon file."""
    try:
        model = ThreatDragonInput(model_path).analyze()
    except ThreatDragonParseError as e:
        _fail(f'Validation failed: {e}')
        return
    user_assets = sum(1 for a in model.assets if a.is_generated_by_user)
    click.echo(click.style('Validation successful!', fg='green'))
    click.echo(f'  Assets: {len(model.assets)} ({user_assets} user created)')
    click.echo(f'  Threats: {sum(len(a.threats) for a in model.assets)}')
    click.echo(f'  Data flows: {len(model.data_flows)}')
    click.echo(f'  Trust boundaries: {len(model.boundaries)}')


def main():
    cli()


if __name__ == '__main__':
    main()
