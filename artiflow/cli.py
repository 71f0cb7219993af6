"""CLI entry point for artiflow."""

from __future__ import annotations

import asyncio
import hashlib
import json
import shutil
import sys
from pathlib import Path
from typing import AsyncIterator, List

import click

from artiflow import __version__
from artiflow.core.protocols import Artifact, StreamDelta

BANNER = """\
╔══════════════════════════════════════╗
║  ARTIFLOW — Artifact Extraction      ║
║  System Initialization               ║
╚══════════════════════════════════════╝"""


def _find_template() -> Path:
    """Locate config.cp.yaml, supporting both dev and PyInstaller."""
    if getattr(sys, "_MEIPASS", None):
        return Path(sys._MEIPASS) / "artiflow" / "config.cp.yaml"
    return Path(__file__).parent / "config.cp.yaml"


def _bootstrap():
    """Load config and logging for commands that touch storage or the network."""
    from artiflow.config import load_config
    from artiflow.logging_config import setup_logging

    cfg = load_config()
    setup_logging(cfg.log.dir)
    return cfg


def _chunks(text: str, size: int) -> List[str]:
    if size <= 0:
        return [text]
    return [text[i:i + size] for i in range(0, len(text), size)]


async def _replay(chunks: List[str]) -> AsyncIterator[StreamDelta]:
    for seq, chunk in enumerate(chunks, start=1):
        yield StreamDelta.text(seq, chunk)


def _describe(artifact: Artifact) -> str:
    subtype = f" ({artifact.subtype})" if artifact.subtype else ""
    flag = " [fallback]" if artifact.fallback else ""
    return f"  [{artifact.status.value}] {artifact.id:<20} {artifact.title}{subtype}{flag}"


def _echo_artifacts(artifacts: List[Artifact], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([a.snapshot() for a in artifacts], indent=2, ensure_ascii=False))
        return
    if not artifacts:
        click.echo("  (no artifacts)")
        return
    for artifact in artifacts:
        click.echo(_describe(artifact))


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """artiflow — streaming artifact extraction"""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite existing config file.")
def init(force: bool) -> None:
    """Initialize config to ~/.artiflow/."""
    from artiflow.config import _default_data_dir

    config_dir = _default_data_dir()
    config_dest = config_dir / "config.yaml"
    template = _find_template()

    click.echo(BANNER)
    click.echo()

    config_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Directory ready: {config_dir}")

    if config_dest.exists() and not force:
        click.echo(f"  [--] Config already exists: {config_dest}")
        click.echo("       Use --force to overwrite.")
    else:
        shutil.copy2(template, config_dest)
        click.echo(f"  [ok] Config created: {config_dest}")

    p = config_dir / "logs"
    p.mkdir(parents=True, exist_ok=True)
    click.echo(f"  [ok] Subdirectory ready: {p}")

    click.echo()
    click.echo(f"  -> Edit {config_dest} to set your API key.")
    click.echo("  -> Then run `artiflow extract <file>` to try the engine.")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--chunk-size", default=16, show_default=True,
              help="Characters per simulated delta (0 = whole file at once).")
@click.option("--json", "as_json", is_flag=True, help="Print artifacts as JSON.")
def extract(file: Path, chunk_size: int, as_json: bool) -> None:
    """Stream FILE through the engine and print the final artifacts."""
    from artiflow.config import load_config
    from artiflow.kernel.state_machine import extract_from_deltas

    cfg = load_config()
    text = file.read_text(encoding="utf-8")
    deltas = [StreamDelta.text(seq, chunk)
              for seq, chunk in enumerate(_chunks(text, chunk_size), start=1)]
    _echo_artifacts(extract_from_deltas(deltas, cfg.engine), as_json)


@cli.command("commit-file")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--chat-id", required=True, help="Chat to commit into.")
@click.option("--user-id", default=None, help="Owner of the chat.")
@click.option("--prompt", default=None, help="User message that produced FILE.")
@click.option("--chunk-size", default=16, show_default=True,
              help="Characters per simulated delta.")
def commit_file(file: Path, chat_id: str, user_id: str | None, prompt: str | None,
                chunk_size: int) -> None:
    """Persist FILE as an assistant response. Re-running it is a no-op."""
    from artiflow.database import get_session, init_db
    from artiflow.services.chat_store import SqlChatStore
    from artiflow.services.persistence_service import ChatPersistence
    from artiflow.services.session_service import GenerationSession

    cfg = _bootstrap()
    init_db()
    text = file.read_text(encoding="utf-8")
    # Ids derive from content so a replay dedups
    digest = hashlib.sha1(f"{chat_id}\0{prompt or ''}\0{text}".encode("utf-8")).hexdigest()[:32]

    db = get_session()
    try:
        store = SqlChatStore(db, cfg.engine.default_chat_title)
        persistence = ChatPersistence(store, cfg.engine)
        session = GenerationSession(chat_id, persistence, cfg.engine,
                                    user_id=user_id, session_id=digest)
        outcome = asyncio.run(session.run(_replay(_chunks(text, chunk_size)), prompt))
    finally:
        db.close()

    _echo_artifacts(outcome.artifacts, as_json=False)
    result = outcome.commit
    if result is None:
        click.echo("  [--] Nothing to commit.")
        return
    if result.degraded:
        click.echo(f"  [!!] History may not have saved: {result.error}", err=True)
        sys.exit(1)
    click.echo(f"  [ok] Saved {len(result.saved_ids)}, skipped {len(result.skipped_ids)} "
               f"-> {result.message_count} message(s) in '{result.title}'")


@cli.command()
@click.argument("prompt")
@click.option("--chat-id", required=True, help="Chat to commit into.")
@click.option("--user-id", default=None, help="Owner of the chat.")
def generate(prompt: str, chat_id: str, user_id: str | None) -> None:
    """Send PROMPT to the configured LLM and extract artifacts as it streams."""
    from artiflow.database import get_session, init_db
    from artiflow.services.chat_store import SqlChatStore
    from artiflow.services.llm_service import LLMStreamSource
    from artiflow.services.persistence_service import ChatPersistence
    from artiflow.services.session_service import GenerationSession

    cfg = _bootstrap()
    init_db()

    async def _run():
        source = LLMStreamSource(cfg.llm)

        async def _echoed() -> AsyncIterator[StreamDelta]:
            async for delta in source.stream([{"role": "user", "content": prompt}]):
                click.echo(delta.content, nl=False)
                yield delta

        try:
            return await session.run(_echoed(), prompt)
        finally:
            await source.close()

    db = get_session()
    try:
        store = SqlChatStore(db, cfg.engine.default_chat_title)
        session = GenerationSession(chat_id, ChatPersistence(store, cfg.engine), cfg.engine,
                                    user_id=user_id)
        outcome = asyncio.run(_run())
    finally:
        db.close()

    click.echo()
    _echo_artifacts(outcome.artifacts, as_json=False)
    if outcome.commit is not None and outcome.commit.degraded:
        click.echo(f"  [!!] History may not have saved: {outcome.commit.error}", err=True)


@cli.command()
@click.argument("chat_id")
def validate(chat_id: str) -> None:
    """Check a chat's stored message count against its real rows."""
    from artiflow.database import get_session, init_db
    from artiflow.services.chat_store import SqlChatStore
    from artiflow.services.persistence_service import ChatPersistence

    cfg = _bootstrap()
    init_db()
    db = get_session()
    try:
        integrity = ChatPersistence(SqlChatStore(db), cfg.engine).validate_chat(chat_id)
    finally:
        db.close()

    if integrity.is_valid:
        click.echo(f"  [ok] {chat_id}: {integrity.message_count} message(s)")
        return
    for issue in integrity.issues:
        click.echo(f"  [!!] {chat_id}: {issue}")
    sys.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"artiflow v{__version__}")
