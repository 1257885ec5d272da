"""
chaseconv CLI - Command-line interface for converting GrandChase character assets
"""

import logging
import sys

import click

from chaseconv.converters.convert import TARGET_FORMATS, convert as convert_assets, load_scene
from chaseconv.converters.grandchase.frm import FRAME_RATE
from chaseconv.exceptions import AssetIOError, ConversionError


@click.group()
@click.version_option(package_name="chaseconv")
def cli():
    """
    chaseconv - Convert GrandChase P3M/FRM character assets to and from GLTF.

    Examples:
        chaseconv convert knight.p3m knight_walk.frm --to glb -o out/
        chaseconv convert knight.glb --to grandchase -o out/
        chaseconv inspect knight.p3m
    """
    pass


@cli.command()
@click.argument('inputs', nargs=-1, required=True)
@click.option('--to', 'target', required=True, type=click.Choice(TARGET_FORMATS, case_sensitive=False),
              help='Target format (grandchase writes .p3m and/or .frm)')
@click.option('-o', '--output-dir', required=True, help='Directory to write the outputs into')
@click.option('--name', default=None, help='Base name of the outputs (default: the model file name)')
@click.option('--verbose', '-v', is_flag=True, help='Show detailed conversion info')
def convert(inputs, target, output_dir, name, verbose):
    """
    Convert one character (a model, an animation, or both) to another format.

    All INPUTS must describe the same character: at most one model and at
    most one animation.

    Examples:
        chaseconv convert knight.p3m knight_walk.frm --to glb -o out/
        chaseconv convert knight.gltf --to grandchase -o out/ --name knight2
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(levelname)s %(name)s: %(message)s')

    try:
        if verbose:
            click.echo(f"Converting: {', '.join(inputs)} → {target}")

        report = convert_assets(list(inputs), target.lower(), output_dir, output_name=name)

        for warning in report.warnings:
            click.secho(f"Warning: {warning}", fg='yellow')
        for path in report.outputs:
            click.echo(f"  {path}")
        click.secho(f"✓ Success! Wrote {len(report.outputs)} file(s) to {output_dir}", fg='green')

    except AssetIOError as e:
        click.secho(f"Error: {e}", fg='red', err=True)
        sys.exit(1)
    except ConversionError as e:
        click.secho(f"Conversion Error: {e}", fg='red', err=True)
        sys.exit(1)
    except Exception as e:
        click.secho(f"Unexpected error: {e}", fg='red', err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@cli.command()
@click.argument('path')
def inspect(path):
    """
    Show what a .p3m, .frm, .gltf or .glb file contains.

    Examples:
        chaseconv inspect knight.p3m
    """
    try:
        scene = load_scene(path)
    except ConversionError as e:
        click.secho(f"Error: {e}", fg='red', err=True)
        sys.exit(1)

    clip = scene.animation
    frames = 0
    if clip is not None and (clip.translation_track.times or any(t.times for t in clip.rotation_tracks)):
        frames = int(round(clip.duration * FRAME_RATE)) + 1

    click.echo(f"File: {path}")
    click.echo(f"  Joints: {scene.skeleton.joint_count if scene.skeleton else 0}")
    click.echo(f"  Vertices: {len(scene.mesh.vertices)}")
    click.echo(f"  Triangles: {scene.mesh.triangle_count}")
    click.echo(f"  Rotation tracks: {len(clip.rotation_tracks) if clip else 0}")
    click.echo(f"  Frames: {frames}")


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == '__main__':
    main()
