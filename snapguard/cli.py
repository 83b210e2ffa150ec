#!/usr/bin/env python3
"""
Snapguard CLI - Command-line interface for signed image uploads

Commands:
    snapguard keygen                 Generate an Ed25519 keypair
    snapguard hash <file>            Print the content hash of an image
    snapguard sign <file>            Build and sign an upload message
    snapguard verify <msg> <sig> <pk>  Check a signature and parse the message
    snapguard upload <file>          Sign and upload an image
    snapguard serve                  Run the upload service
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from snapguard import message as message_codec
from snapguard.client import (
    DEFAULT_BASE_URL,
    UploadClient,
    UploadConnectionError,
    UploadRejectedError,
)
from snapguard.freshness import FreshnessGuard
from snapguard.hasher import digest_file
from snapguard.signer import Ed25519Signer, sign_upload
from snapguard.verifier import SignatureVerifier

app = typer.Typer(
    name="snapguard",
    help="🔐 Snapguard CLI - Sign, verify and upload check-in photos",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


# =============================================================================
# Utility Functions
# =============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def truncate_key(key: str, length: int = 16) -> str:
    """Truncate a key for display with ellipsis."""
    if len(key) <= length:
        return key
    return f"{key[:length//2]}...{key[-length//2:]}"


def load_signer(key: Optional[str]) -> Ed25519Signer:
    """Signer from --key or SNAPGUARD_PRIVATE_KEY, exit on failure."""
    private_key = key or os.environ.get("SNAPGUARD_PRIVATE_KEY")
    if not private_key:
        rprint("[red]Error:[/red] Missing private key. Set SNAPGUARD_PRIVATE_KEY or use --key")
        raise typer.Exit(1)
    try:
        return Ed25519Signer.from_private_hex(private_key)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    setup_logging(verbose)


# =============================================================================
# Commands
# =============================================================================


@app.command("keygen")
def keygen(
    env: bool = typer.Option(False, "--env", help="Output as environment variables"),
):
    """
    🔑 Generate a new Ed25519 keypair.
    """
    signer = Ed25519Signer.generate()

    if env:
        print(f"export SNAPGUARD_PRIVATE_KEY='{signer.private_key_hex()}'")
        print(f"export SNAPGUARD_PUBLIC_KEY='{signer.public_key_hex}'")
        return

    rprint(Panel(
        f"[dim]Private key (keep secret):[/dim]\n{signer.private_key_hex()}\n\n"
        f"[dim]Public key:[/dim]\n{signer.public_key_hex}",
        title="New Identity",
        border_style="green",
    ))


@app.command("hash")
def hash_file(
    file: Path = typer.Argument(..., help="Image to hash", exists=True, readable=True),
):
    """
    #️⃣  Print the SHA-256 content hash of an image.
    """
    print(digest_file(file))


@app.command("sign")
def sign_file(
    file: Path = typer.Argument(..., help="Image to sign", exists=True, readable=True),
    identity: str = typer.Option(..., "--identity", "-i", help="Uploader account address"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Private key (hex)"),
    device_id: Optional[str] = typer.Option(None, "--device-id", "-d", help="Device fingerprint to bind"),
    as_json: bool = typer.Option(False, "--json", help="Output the form fields as JSON"),
):
    """
    🖊️  Build and sign an upload message for an image.

    Examples:
        snapguard sign photo.jpg --identity 0xabc
        snapguard sign photo.jpg -i 0xabc --device-id 5f2c... --json
    """
    signer = load_signer(key)
    try:
        signed = sign_upload(file.read_bytes(), identity, signer, device_id=device_id)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        print(json.dumps(signed.form_fields(), indent=2))
        return

    table = Table(title="Signed Upload", show_header=False)
    table.add_row("Hash", signed.image_hash)
    table.add_row("Message", signed.message)
    table.add_row("Signature", truncate_key(signed.signature, 32))
    table.add_row("Public key", signed.public_key)
    console.print(table)


@app.command("verify")
def verify_message(
    message: str = typer.Argument(..., help="The signed upload message"),
    signature: str = typer.Argument(..., help="Signature (hex)"),
    public_key: str = typer.Argument(..., help="Public key (hex)"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    🔍 Verify a signature and show the parsed upload claims.
    """
    valid = SignatureVerifier().verify(message, signature, public_key)
    parsed = message_codec.parse(message)
    fresh = parsed is not None and FreshnessGuard().is_fresh(parsed.timestamp)

    if as_json:
        result = {"valid": valid, "fresh": fresh}
        if parsed is not None:
            result.update(
                image_hash=parsed.image_hash,
                timestamp=parsed.timestamp,
                identity=parsed.identity,
                device_id=parsed.device_id,
            )
        print(json.dumps(result, indent=2))
    elif valid and parsed is not None:
        rprint("[green]✅ VALID[/green]")
        rprint(f"   Identity: {parsed.identity}")
        rprint(f"   Hash:     {parsed.image_hash}")
        if parsed.device_id:
            rprint(f"   Device:   {parsed.device_id}")
        rprint(f"   Fresh:    {'yes' if fresh else '[yellow]no (expired)[/yellow]'}")
    else:
        rprint("[red]❌ INVALID[/red]")

    if not valid or parsed is None:
        raise typer.Exit(1)


@app.command("upload")
def upload_file(
    file: Path = typer.Argument(..., help="Image to upload", exists=True, readable=True),
    identity: str = typer.Option(..., "--identity", "-i", help="Uploader account address"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Private key (hex)"),
    device_id: Optional[str] = typer.Option(None, "--device-id", "-d", help="Device fingerprint to bind"),
    url: str = typer.Option(DEFAULT_BASE_URL, "--url", help="Upload service URL"),
):
    """
    📤 Sign an image and upload it.
    """
    signer = load_signer(key)

    with console.status(f"[bold blue]Uploading {file.name}..."):
        try:
            with UploadClient(url) as client:
                result = client.upload_file(file, identity, signer, device_id=device_id)
        except UploadConnectionError as e:
            rprint(Panel(
                f"[bold red]❌ Upload service not reachable[/bold red]\n\n{e}",
                title="Connection Error",
                border_style="red",
            ))
            raise typer.Exit(1)
        except UploadRejectedError as e:
            body = f"[bold red]❌ {e.error}[/bold red]"
            if e.hint:
                body += f"\n\n[dim]{e.hint}[/dim]"
            rprint(Panel(body, title=f"Rejected ({e.status_code})", border_style="red"))
            raise typer.Exit(1)

    rprint(Panel(
        "[bold green]✅ Image uploaded![/bold green]\n\n"
        f"[dim]URL:[/dim]  {result.image_url}\n"
        f"[dim]Hash:[/dim] {result.file_hash}",
        title="Uploaded",
        border_style="green",
    ))


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """
    🚀 Run the upload service.
    """
    from snapguard import config
    from snapguard.main import start

    start(host=host or config.HOST, port=port or config.PORT)


if __name__ == "__main__":
    app()
