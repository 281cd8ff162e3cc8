"""
Command Line Interface for Kiln.
"""
import logging
import os
import sys

import click
import yaml

from ..exceptions import KilnError
from ..MODELS.run_config import ContainerRunConfig, VolumeMount
from ..MANAGERS.engine import Engine
from ..PARSERS.config_parser import load_config
from ..RUNNERS.container_runner import load_env_files
from ..UTILS.hashing import short_id

DEFAULT_STATE_DIR = os.path.join("~", ".kiln")


def _engine(ctx) -> Engine:
    """Creates the engine on first use so that --help never touches state."""
    if 'engine' not in ctx.obj:
        ctx.obj['engine'] = Engine(ctx.obj['config'])
        ctx.call_on_close(ctx.obj['engine'].close)
    return ctx.obj['engine']


def _fail(error: Exception):
    raise click.ClickException(str(error))


@click.group()
@click.option('--config', '-c', 'config_path', default=None, help='Engine configuration file (YAML)')
@click.option('--state-dir', default=None, help='Directory for images, layers, cache and volumes')
@click.option('--log-level', default=None, help='Logging level (DEBUG, INFO, WARNING, ...)')
@click.pass_context
def cli(ctx, config_path, state_dir, log_level):
    """
    Kiln - declarative container image builds.

    Builds layered images from recipes with a content-addressed layer cache
    and runs them with named persistent volumes.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(e)
    updates = {}
    if state_dir:
        updates['state_dir'] = state_dir
    elif config.state_dir is None:
        updates['state_dir'] = os.path.expanduser(DEFAULT_STATE_DIR)
    if log_level:
        updates['log_level'] = log_level
    config = config.model_copy(update=updates)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    ctx.obj['config'] = config


@cli.command()
@click.argument('path', type=click.Path(exists=True, file_okay=False))
@click.option('--tag', '-t', 'tags', multiple=True, help='Name and optionally a tag (name:tag)')
@click.option('--file', '-f', 'recipe_file', default=None, help='Recipe path (default: PATH/Kilnfile)')
@click.option('--no-cache', is_flag=True, help='Do not use cached layers')
@click.pass_context
def build(ctx, path, tags, recipe_file, no_cache):
    """Build an image from a recipe."""
    try:
        result = _engine(ctx).build_directory(path, tags=tags, recipe_file=recipe_file, no_cache=no_cache)
    except (KilnError, OSError) as e:
        _fail(e)
    click.echo(f"Built {short_id(result.image.id)} "
               f"({result.cache_hits} cached, {result.cache_misses} executed)")
    for tag in result.tags:
        click.echo(f"Tagged {tag}")


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument('image')
@click.argument('command', nargs=-1, type=click.UNPROCESSED)
@click.option('--volume', '-v', 'volumes', multiple=True, help='Mount a named volume (name:/path)')
@click.option('--memory', '-m', default=None, help='Memory limit (e.g. 512m, 2g)')
@click.option('--env', '-e', 'env', multiple=True, help='Set environment variables (KEY=VALUE)')
@click.option('--env-file', 'env_files', multiple=True, help='Read environment variables from a file')
@click.option('--user', '-u', default=None, help='Run as user[:group]')
@click.pass_context
def run(ctx, image, command, volumes, memory, env, env_files, user):
    """Run a command in a new container."""
    try:
        environment = load_env_files(env_files)
        for item in env:
            key, sep, value = item.partition('=')
            if not sep:
                value = os.environ.get(key, '')
            environment[key] = value
        config = ContainerRunConfig(
            image=image,
            volumes=[VolumeMount.parse(spec) for spec in volumes],
            memory_limit=memory,
            environment=environment,
            command=list(command),
            user=user,
        )
        result = _engine(ctx).run(config)
    except (KilnError, OSError, ValueError) as e:
        _fail(e)
    if result.output:
        click.echo(result.output, nl=False)
    ctx.exit(result.exit_code)


@cli.group()
def volume():
    """Manage named volumes."""
    pass


@volume.command('create')
@click.option('--name', required=True, help='Volume name')
@click.pass_context
def volume_create(ctx, name):
    """Create a volume."""
    try:
        created = _engine(ctx).volumes.create(name)
    except (KilnError, ValueError) as e:
        _fail(e)
    click.echo(created.name)


@volume.command('ls')
@click.pass_context
def volume_ls(ctx):
    """List volumes."""
    click.echo(f"{'VOLUME NAME':20} {'OWNER':10} {'ATTACHED':8}")
    for vol in _engine(ctx).volumes.list_volumes():
        owner = f"{vol.owner_uid}:{vol.owner_gid}" if vol.ownership_applied else "-"
        click.echo(f"{vol.name:20} {owner:10} {len(vol.attachments):<8}")


@volume.command('rm')
@click.argument('names', nargs=-1, required=True)
@click.pass_context
def volume_rm(ctx, names):
    """Remove one or more volumes."""
    for name in names:
        try:
            _engine(ctx).volumes.remove(name)
        except KilnError as e:
            _fail(e)
        click.echo(name)


@cli.command()
@click.pass_context
def images(ctx):
    """List images."""
    engine = _engine(ctx)
    click.echo(f"{'REPOSITORY:TAG':30} {'IMAGE ID':12} {'LAYERS':6} {'SIZE':>10}")
    for image, tags in engine.images():
        size = sum(engine.layer_store.get(layer_id).size for layer_id in image.layers)
        for tag in tags or ["<none>"]:
            click.echo(f"{tag:30} {short_id(image.id):12} {len(image.layers):<6} {size:>10}")


@cli.command()
@click.argument('references', nargs=-1, required=True)
@click.pass_context
def rmi(ctx, references):
    """Remove images. A tag shared with other tags is only untagged."""
    engine = _engine(ctx)
    for reference in references:
        try:
            image = engine.get_image(reference)
        except KilnError as e:
            _fail(e)
        tags = engine.image_store.tags_for(image.id)
        try:
            tag = engine.image_store.normalize_tag(reference)
        except ValueError:
            # referenced by id
            tag = None
        if tag in tags and len(tags) > 1:
            engine.image_store.untag(tag)
            click.echo(f"Untagged: {tag}")
        else:
            engine.remove_image(image.id)
            click.echo(f"Deleted: {short_id(image.id)}")


@cli.command('import')
@click.argument('directory', type=click.Path(exists=True, file_okay=False))
@click.option('--tag', '-t', required=True, help='Reference for the imported base image')
@click.pass_context
def import_(ctx, directory, tag):
    """Import a host directory as a base image."""
    try:
        image = _engine(ctx).import_directory(directory, tag)
    except (KilnError, OSError, ValueError) as e:
        _fail(e)
    click.echo(short_id(image.id))


@cli.command()
@click.pass_context
def prune(ctx):
    """Remove cache entries and layers no image uses."""
    report = _engine(ctx).prune()
    click.echo(f"Removed {report.cache_entries} cache entries and {report.layers} layers")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
