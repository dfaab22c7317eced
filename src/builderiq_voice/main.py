"""
main.py — BuilderIQ Voice Entry Point

Usage:
    builderiq-voice                              # listen with config/config.yaml
    builderiq-voice --wake-word "hey studio"     # override the activation phrase
    builderiq-voice --personality professional
    builderiq-voice --no-speak                   # never speak replies
    builderiq-voice --direct                     # skip the wake word, greet first
    builderiq-voice --list-voices                # show synthesizer voices and exit
    builderiq-voice --log-level DEBUG
    python -m builderiq_voice --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

console = Console()


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for a .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="builderiq-voice",
        description="BuilderIQ Voice — hands-free app building by voice",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $BUILDERIQ_VOICE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--wake-word",
        default=None,
        help="Activation phrase (empty string disables the wake word)",
    )
    parser.add_argument(
        "--personality",
        choices=["professional", "friendly", "enthusiastic"],
        default=None,
        help="Voice personality for spoken replies",
    )
    parser.add_argument(
        "--no-speak",
        action="store_true",
        default=False,
        help="Do not speak command responses",
    )
    parser.add_argument(
        "--direct",
        action="store_true",
        default=False,
        help="Activate immediately with a spoken greeting instead of waiting for the wake word",
    )
    parser.add_argument(
        "--list-voices",
        action="store_true",
        default=False,
        help="List synthesizer voices and exit",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, apply CLI overrides, validate, and set up logging.
    Returns (settings, log).

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values (ValidationError) or cross-field problems (ConfigError).
    """
    from pydantic import ValidationError

    from builderiq_voice.config.settings import ConfigError, VoiceConfig, load_settings
    from builderiq_voice.observability.logger import get_logger, setup_logging

    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
        overrides = {}
        if args.wake_word is not None:
            overrides["wake_word"] = args.wake_word
        if args.personality is not None:
            overrides["voice_personality"] = args.personality
        if args.no_speak:
            overrides["speak_responses"] = False
        if overrides:
            settings.voice = VoiceConfig.model_validate(
                {**settings.voice.model_dump(), **overrides}
            )
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your environment and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all(require_model=not args.list_voices)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("builderiq_voice.main")
    return settings, log


async def list_voices(settings) -> int:
    from builderiq_voice.exceptions import SpeechSynthesisError
    from builderiq_voice.voice.speech import select_voice
    from builderiq_voice.voice.tts import Pyttsx3Synthesizer

    synth = Pyttsx3Synthesizer.from_settings(settings)
    if not synth.is_available():
        console.print("[red]❌ pyttsx3 is not installed. pip install 'builderiq-voice[audio]'[/]")
        return 1
    try:
        await synth.prepare()
    except SpeechSynthesisError as exc:
        console.print(f"[red]❌ {exc}[/]")
        synth.close()
        return 1
    voices = synth.voices()
    chosen = select_voice(voices, settings.voice.language)
    table = Table(title="Synthesizer voices", box=box.SIMPLE)
    table.add_column("", width=2)
    table.add_column("Name")
    table.add_column("Language")
    table.add_column("Id", overflow="fold")
    for v in voices:
        table.add_row("★" if v == chosen else "", v.name, v.lang or "—", v.id)
    console.print(table)
    synth.close()
    return 0


async def run(settings, log, *, direct: bool = False) -> int:
    from builderiq_voice.voice.controller import VoiceSessionController
    from builderiq_voice.voice.types import SessionPhase

    wake = settings.voice.wake_word
    console.print(Panel.fit(
        f"[bold]BuilderIQ Voice[/]\n"
        f"Say [cyan]\"{wake}\"[/] then a command, e.g. \"show templates\"."
        if wake and not direct else
        "[bold]BuilderIQ Voice[/]\nListening for commands. Say \"stop\" to finish.",
        border_style="cyan",
    ))

    def _on_listening(listening: bool) -> None:
        console.print("[dim]🎙  listening[/]" if listening else "[dim]⏸  not listening[/]")

    def _on_error(exc) -> None:
        console.print(f"[red]⚠ {exc}[/]")

    ctrl = VoiceSessionController.from_settings(
        settings,
        on_transcript=lambda text: console.print(f"👤 [bold]You:[/] {text}"),
        on_command=lambda key: console.print(f"⚡ [green]command[/] {key}"),
        on_wake_word=lambda: console.print("[cyan]✨ wake word detected[/]"),
        on_listening_change=_on_listening,
        on_error=_on_error,
    )
    if not ctrl.is_supported:
        console.print(f"[red]❌ {ctrl.error}[/]")
        return 1

    log.info("main.voice_bootstrap", wake_word=wake or None, direct=direct)
    try:
        async with ctrl:
            if direct:
                await ctrl.activate_directly()
            else:
                await ctrl.start()
            while not (ctrl.phase.is_terminal or ctrl.phase is SessionPhase.STOPPED):
                await asyncio.sleep(0.25)
    except KeyboardInterrupt:
        log.info("main.interrupted")
    console.print("[dim]Goodbye.[/]")
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)
    if args.list_voices:
        return await list_voices(settings)
    return await run(settings, log, direct=args.direct)


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
