"""Command-line interface for inspecting spilled Blocks."""

import json
import logging
import sys

import typer

from spillway.crypto import EncryptionKey, LocalKeyFactory
from spillway.exceptions import DecryptionError
from spillway.reader import SpillReader

app = typer.Typer(add_completion=False)


@app.command()
def inspect(
    location: str = typer.Argument(
        ...,
        help="Spilled block location: s3://bucket/key",
    ),
    key: str | None = typer.Option(
        None,
        help="Hex-encoded AES-256 key the block was spilled with",
    ),
    nonce: str | None = typer.Option(
        None,
        help="Hex-encoded GCM nonce the block was spilled with",
    ),
    root: str | None = typer.Option(
        None,
        help="Read from a local spill store rooted here instead of S3",
    ),
    output: str | None = typer.Option(
        None,
        help="Output CSV file path (default: stdout)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """Decrypt a spilled block and print it as CSV."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)

    if (key is None) != (nonce is None):
        typer.echo("Error: --key and --nonce must be given together", err=True)
        raise typer.Exit(code=2)

    try:
        encryption_key = EncryptionKey(bytes.fromhex(key), bytes.fromhex(nonce)) if key and nonce else None
        reader = SpillReader(root or "s3://")

        if output:
            rows = reader.to_csv(location, encryption_key, output)
            typer.echo(f"{rows} rows written to: {output}", err=True)
        else:
            block = reader.read_block(location, encryption_key)
            for line in reader.iter_csv(block):
                sys.stdout.buffer.write(line)
            sys.stdout.flush()

    except FileNotFoundError as e:
        typer.echo(f"Error: Spilled block not found: {e}", err=True)
        raise typer.Exit(code=1) from None
    except DecryptionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except ImportError as e:
        typer.echo(
            f"Error: Missing dependency: {e}\nInstall with: pip install spillway[s3]",
            err=True,
        )
        raise typer.Exit(code=1) from None
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        if verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        raise typer.Exit(code=1) from None


@app.command()
def keygen() -> None:
    """Print a fresh encryption key and nonce as JSON."""
    typer.echo(json.dumps(LocalKeyFactory().create().to_dict()))


if __name__ == "__main__":
    app()
