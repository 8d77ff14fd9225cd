"""Command-line interface for GroupSync."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from aiohttp import ClientError

from groupsync.asset_server import DEFAULT_ASSET_PORT, AssetServer
from groupsync.click_track import (
    ClickTrackConfig,
    encode_wav,
    generate_schedule,
    read_wav,
    render_track,
    synthesize_click,
    write_wav,
)
from groupsync.detector import DetectorConfig, OnsetDetector
from groupsync.discovery import ServiceDiscovery
from groupsync.errors import GroupSyncError
from groupsync.hooks import run_hook
from groupsync.music_assistant import MusicAssistantClient
from groupsync.offset import MatchConfig, OffsetCalculator
from groupsync.session import (
    CalibrationConfig,
    CalibrationResult,
    CalibrationSession,
    Progress,
    StateChanged,
)
from groupsync.settings import CalibratorSettings, get_settings
from groupsync.sync_client import SendspinSyncClient
from groupsync.sync_push import SyncOffsetPusher
from groupsync.utils import create_task

logger = logging.getLogger(__name__)

_ANALYZE_CHUNK_SIZE = 2048
_DISCOVERY_TIMEOUT_S = 10.0


def _add_track_arguments(parser: argparse.ArgumentParser) -> None:
    defaults = ClickTrackConfig()
    parser.add_argument("--sample-rate", type=int, default=defaults.sample_rate)
    parser.add_argument(
        "--duration", type=float, default=defaults.total_duration_s, help="Track length (s)"
    )
    parser.add_argument(
        "--interval", type=float, default=defaults.click_interval_ms, help="Click interval (ms)"
    )
    parser.add_argument(
        "--click-duration",
        type=float,
        default=defaults.click_duration_ms,
        help="Click length (ms)",
    )


def _track_config(args: argparse.Namespace) -> ClickTrackConfig:
    return ClickTrackConfig(
        sample_rate=args.sample_rate,
        total_duration_s=args.duration,
        click_interval_ms=args.interval,
        click_duration_ms=args.click_duration,
    )


def _first_set(*values: int | None, default: int) -> int:
    """First value that is not None, so an explicit 0 still counts."""
    return next((value for value in values if value is not None), default)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="groupsync",
        description="Measure and correct the acoustic latency of Sendspin speakers.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--config-dir", default=None, help="Settings directory (default: ~/.config/groupsync)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Render the calibration click track to a WAV file")
    gen.add_argument("output", type=Path)
    _add_track_arguments(gen)

    sub.add_parser("devices", help="List audio input and output devices")

    cal = sub.add_parser("calibrate", help="Calibrate one or more players")
    cal.add_argument("--server", help="Music Assistant server URL")
    cal.add_argument(
        "--player", action="append", required=True, dest="players", help="Player ID (repeatable)"
    )
    cal.add_argument("--sendspin-url", help="Sendspin server URL for clock synchronization")
    cal.add_argument(
        "--discover", action="store_true", help="Find the Sendspin server via mDNS"
    )
    cal.add_argument("--require-sync", action="store_true", help="Fail if clock sync fails")
    cal.add_argument("--media-uri", help="Use this URI instead of serving the track locally")
    cal.add_argument("--asset-host", help="Address players use to reach this machine")
    cal.add_argument("--asset-port", type=int, default=None, help="Port for the track server")
    cal.add_argument("--mic", help="Input device index or name")
    cal.add_argument("--output-device", help="Output device for local fallback playback")
    cal.add_argument(
        "--no-local-fallback", action="store_true", help="Fail instead of playing locally"
    )
    cal.add_argument("--no-push", action="store_true", help="Do not push offsets to players")
    cal.add_argument("--hook", help="Shell command run after each player")
    _add_track_arguments(cal)

    ana = sub.add_parser("analyze", help="Measure clicks in a recorded WAV file")
    ana.add_argument("recording", type=Path)
    ana.add_argument(
        "--correlate", action="store_true", help="Refine the first click by cross-correlation"
    )
    _add_track_arguments(ana)

    return parser.parse_args(argv)


def _print_result(result: CalibrationResult) -> None:
    sync_note = "" if result.clock_synced else " (no clock sync)"
    print(  # noqa: T201
        f"{result.endpoint_name}: offset {result.offset_ms:+.1f} ms, "
        f"confidence {result.confidence:.0%}, "
        f"{result.detected_count}/{result.total_expected} clicks, "
        f"std {result.std_dev_ms:.1f} ms{sync_note}",
        flush=True,
    )


def cmd_generate(args: argparse.Namespace) -> int:
    config = _track_config(args)
    write_wav(args.output, render_track(config), config.sample_rate)
    print(  # noqa: T201
        f"Wrote {config.num_clicks} clicks ({config.total_duration_s:.0f}s, "
        f"{config.sample_rate} Hz, {config.channels} ch) to {args.output}"
    )
    return 0


def cmd_devices() -> int:
    # Imported here so other commands work without PortAudio
    from groupsync.audio import query_devices

    for device in query_devices():
        marks = []
        if device.is_default_input:
            marks.append("default input")
        if device.is_default_output:
            marks.append("default output")
        suffix = f" [{', '.join(marks)}]" if marks else ""
        print(  # noqa: T201
            f"{device.index:3d}: {device.name} "
            f"(in {device.input_channels}, out {device.output_channels}, "
            f"{device.sample_rate:.0f} Hz){suffix}"
        )
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    config = _track_config(args)
    samples, sample_rate = read_wav(args.recording)
    if sample_rate != config.sample_rate:
        logger.info("Using the recording's sample rate of %d Hz", sample_rate)
        config = ClickTrackConfig(
            sample_rate=sample_rate,
            total_duration_s=config.total_duration_s,
            click_interval_ms=config.click_interval_ms,
            click_duration_ms=config.click_duration_ms,
        )

    detector = OnsetDetector(
        DetectorConfig(sample_rate=sample_rate, expected_frequencies=config.frequencies)
    )
    detector.start()
    for start in range(0, samples.size, _ANALYZE_CHUNK_SIZE):
        detector.process_chunk(samples[start : start + _ANALYZE_CHUNK_SIZE])
    detections = detector.detections

    calculator = OffsetCalculator(sample_rate, MatchConfig())
    schedule = generate_schedule(config)
    pairs = calculator.match_detections(detections, schedule)
    summary = calculator.calculate_average_offset(pairs)

    print(  # noqa: T201
        f"Detected {len(detections)}/{len(schedule)} clicks, matched {len(pairs)}; "
        f"track starts at {summary.offset_ms:.1f} ms "
        f"(std {summary.std_dev_ms:.1f} ms, confidence {summary.confidence:.0%}, "
        f"{len(summary.rejected_offsets)} outliers)"
    )

    if args.correlate and detections:
        first = detections[0]
        template = synthesize_click(
            first.frequency_hz, config.click_duration_ms, config.amplitude, sample_rate
        )
        window_start = max(0, int((first.timestamp_ms - 50) / 1000 * sample_rate))
        window_end = window_start + 4 * template.size
        correlation = calculator.calculate_offset(template, samples[window_start:window_end])
        onset_ms = window_start / sample_rate * 1000 + correlation.offset_ms
        print(  # noqa: T201
            f"First click at {onset_ms:.2f} ms by correlation "
            f"(detector: {first.timestamp_ms:.2f} ms, confidence {correlation.confidence:.0%})"
        )
    return 0 if detections else 1


async def _print_events(session: CalibrationSession) -> None:
    name = session.endpoint_name
    while True:
        event = await session.events.get()
        if isinstance(event, StateChanged):
            print(f"[{name}] {event.state.name.lower()}", flush=True)  # noqa: T201
        elif isinstance(event, Progress):
            print(  # noqa: T201
                f"[{name}] click {event.detected}/{event.total} ({event.percentage}%)",
                flush=True,
            )


async def _resolve_sendspin_url(
    args: argparse.Namespace, settings: CalibratorSettings
) -> str | None:
    if args.sendspin_url:
        return args.sendspin_url
    if args.discover:
        discovery = ServiceDiscovery()
        await discovery.start()
        try:
            print("Searching for Sendspin servers...", flush=True)  # noqa: T201
            return await discovery.wait_for_first_server(timeout=_DISCOVERY_TIMEOUT_S)
        except TimeoutError:
            logger.warning("No Sendspin server found via mDNS")
            return None
        finally:
            await discovery.stop()
    return settings.sendspin_url


async def _player_name(client: MusicAssistantClient, player_id: str) -> str:
    try:
        player = await client.get_player(player_id)
    except GroupSyncError as err:
        logger.debug("Could not look up player %s: %s", player_id, err)
        return player_id
    if isinstance(player, dict):
        return str(player.get("display_name") or player.get("name") or player_id)
    return player_id


async def cmd_calibrate(  # noqa: PLR0915
    args: argparse.Namespace, settings: CalibratorSettings
) -> int:
    # Imported here so other commands work without PortAudio
    from groupsync.audio import LocalPlayer, MicrophoneCapture, resolve_device

    server_url = args.server or settings.server_url
    if not server_url:
        logger.error("No Music Assistant server given (use --server)")
        return 2

    try:
        mic = resolve_device(args.mic or settings.mic_device, "input")
        output = resolve_device(args.output_device or settings.output_device, "output")
    except ValueError as err:
        logger.error("%s", err)
        return 2

    track_config = _track_config(args)
    config = CalibrationConfig(click_track=track_config, require_clock_sync=args.require_sync)
    sendspin_url = await _resolve_sendspin_url(args, settings)
    if args.require_sync and not sendspin_url:
        logger.error("--require-sync needs a Sendspin server (use --sendspin-url or --discover)")
        return 2

    asset_server: AssetServer | None = None
    media_uri = args.media_uri
    if media_uri is None:
        asset_server = AssetServer(
            encode_wav(render_track(track_config), track_config.sample_rate),
            port=_first_set(args.asset_port, settings.asset_port, default=DEFAULT_ASSET_PORT),
            public_host=args.asset_host or settings.asset_host,
        )
        await asset_server.start()
        media_uri = asset_server.url

    client = MusicAssistantClient()
    hook = args.hook or settings.hook
    current: CalibrationSession | None = None
    stop_requested = False
    failures = 0

    def signal_handler() -> None:
        nonlocal stop_requested
        logger.debug("Received interrupt signal, cancelling...")
        stop_requested = True
        if current is not None:
            current.cancel()

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, signal_handler)
        loop.add_signal_handler(signal.SIGTERM, signal_handler)

    try:
        await client.connect(server_url)
        pusher = SyncOffsetPusher(client)

        for player_id in args.players:
            if stop_requested:
                break
            name = await _player_name(client, player_id)
            current = CalibrationSession(
                player_id,
                name,
                capture=MicrophoneCapture(mic),
                playback=client,
                media_uri=media_uri,
                sync_client=SendspinSyncClient() if sendspin_url else None,
                sync_url=sendspin_url,
                local_player=None if args.no_local_fallback else LocalPlayer(output),
                config=config,
            )
            printer = create_task(_print_events(current))
            try:
                result = await current.run()
            except GroupSyncError as err:
                failures += 1
                print(f"[{name}] calibration failed: {err}", flush=True)  # noqa: T201
                if hook:
                    await run_hook(hook, event="failed", server_url=server_url, error=str(err))
                continue
            finally:
                printer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await printer

            if result is None:
                print(f"[{name}] cancelled", flush=True)  # noqa: T201
                break

            _print_result(result)
            if not args.no_push:
                push = await pusher.push(result)
                if push.success:
                    print(f"[{name}] offset saved via {push.method}", flush=True)  # noqa: T201
                else:
                    print(f"[{name}] could not save offset: {push.error}", flush=True)  # noqa: T201
            if hook:
                await run_hook(hook, event="calibrated", result=result, server_url=server_url)
    except (GroupSyncError, ClientError, OSError) as err:
        logger.error("Calibration aborted: %s", err)
        return 1
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
        await client.disconnect()
        if asset_server is not None:
            await asset_server.stop()

    settings.update(server_url=server_url, sendspin_url=sendspin_url)
    return 1 if failures else 0


async def _async_main(args: argparse.Namespace) -> int:
    settings = await get_settings(args.config_dir)
    if args.log_level is None and settings.log_level:
        logging.getLogger().setLevel(settings.log_level.upper())
    try:
        if args.command == "calibrate":
            return await cmd_calibrate(args, settings)
        if args.command == "devices":
            return cmd_devices()
        if args.command == "analyze":
            return cmd_analyze(args)
        return cmd_generate(args)
    finally:
        await settings.flush()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the GroupSync CLI."""
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level or logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_async_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
