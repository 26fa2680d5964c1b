import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from typing import List, Mapping, Optional

from tunesync.application.backup import export_playlists
from tunesync.application.gateway import RetryingProvider
from tunesync.application.matching import TrackMatcher
from tunesync.application.pipeline import SyncOrchestrator
from tunesync.crosscutting.config import PLATFORMS, CredentialStore, SyncConfig, parse_skip_playlists
from tunesync.crosscutting.logging import setup_logging
from tunesync.crosscutting.ratelimit import RetryPolicy, limiter_for
from tunesync.crosscutting.reporting import MetricsCollector, SyncReport
from tunesync.domain.errors import ConfigurationInvalid, SyncAborted, Unauthorized
from tunesync.domain.ports import MusicProvider
from tunesync.infrastructure.providers.json_file import JsonFileProvider
from tunesync.infrastructure.providers.spotify import SpotifyProvider
from tunesync.infrastructure.providers.tidal import TidalProvider
from tunesync.infrastructure.providers.yandex import YandexMusicProvider
from tunesync.infrastructure.providers.ytmusic import YtMusicProvider


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


class CLI:
    """Command Line Interface for tunesync."""

    def __init__(self, env: Optional[Mapping[str, str]] = None, config_dir: Optional[str] = None):
        """Initialize CLI.

        Args:
            env: Environment to read settings and secrets from; the process
                environment (after loading ``.env``) when omitted
            config_dir: Directory holding the ``tokens.json`` fallback
        """
        self.env = env
        self.config_dir = config_dir
        self.parser = self._create_parser()
        self._cancel_event = threading.Event()
        self._signal_count = 0
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='INFO',
            help='Set logging level'
        )
        common.add_argument('--log-file', help='Also log to this file (rotated at ~100MB)')
        common.add_argument('--json-logs', action='store_true', help='Emit logs as JSON lines')
        common.add_argument('--config-dir', help='Directory with tokens.json (default: ~/.tunesync)')

        sync_options = argparse.ArgumentParser(add_help=False)
        sync_options.add_argument('--target', choices=PLATFORMS, required=True, help='Destination platform')
        sync_options.add_argument('--owner', help='Only sync playlists owned by this user id')
        sync_options.add_argument(
            '--skip-playlists',
            help='Playlist names to skip, separated by "|" (e.g. "Chill|Workout")'
        )
        sync_options.add_argument('--sync-likes', action='store_true', help='Also sync liked tracks')
        sync_options.add_argument('--like-all', action='store_true',
                                  help='Like every track written to a destination playlist')
        sync_options.add_argument('--diff-country', action='store_true',
                                  help='Allow source and destination accounts in different countries')
        sync_options.add_argument('--debug', action='store_true', help='Write debug report files')
        sync_options.add_argument('--debug-dir', help='Directory for debug report files (default: debug)')
        sync_options.add_argument('--duration-tolerance-ms', type=int,
                                  help='Maximum duration difference for a match (default: 5000)')
        sync_options.add_argument('--match-threshold', type=float,
                                  help='Minimum similarity score for a match (default: 0.8)')
        sync_options.add_argument('--report-path', default='reports/',
                                  help='Directory to save the run report (default: reports/)')

        parser = argparse.ArgumentParser(
            prog='tunesync',
            description='Synchronise playlists and likes between music streaming platforms'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        sync_parser = subparsers.add_parser('sync', parents=[common, sync_options],
                                            help='Sync playlists from one platform to another')
        sync_parser.add_argument('--source', choices=PLATFORMS, required=True, help='Source platform')

        import_parser = subparsers.add_parser('import', parents=[common, sync_options],
                                              help='Sync playlists from an export file')
        import_parser.add_argument('--file', required=True, help='Export file to read playlists from')

        export_parser = subparsers.add_parser('export', parents=[common],
                                              help='Export playlists with their tracks to a JSON file')
        export_parser.add_argument('--source', choices=PLATFORMS, required=True, help='Platform to export')
        export_parser.add_argument('--dest', required=True, help='File to write')
        export_parser.add_argument('--minify', action='store_true', help='Write compact JSON')
        export_parser.add_argument('--owner', help='Only export playlists owned by this user id')

        list_parser = subparsers.add_parser('list', parents=[common], help='List available playlists')
        list_parser.add_argument('--provider', choices=PLATFORMS, required=True,
                                 help='Provider to list playlists from')
        list_parser.add_argument('--owner', help='Only list playlists owned by this user id')

        return parser

    def _install_signal_handlers(self):
        """Set the cancel event on the first SIGINT/SIGTERM; exit on the second."""
        def signal_handler(signum, frame):
            self._signal_count += 1
            if self._signal_count > 1:
                logger.warning(f"Received signal {signum} again, exiting immediately")
                sys.exit(EXIT_CANCELLED)
            logger.warning(f"Received signal {signum}, finishing current track and stopping...")
            self._cancel_event.set()

        previous = {
            signal.SIGINT: signal.signal(signal.SIGINT, signal_handler),
            signal.SIGTERM: signal.signal(signal.SIGTERM, signal_handler),
        }
        return previous

    @staticmethod
    def _restore_signal_handlers(previous) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _credentials(self, args: argparse.Namespace) -> CredentialStore:
        return CredentialStore(config_dir=getattr(args, 'config_dir', None) or self.config_dir, env=self.env)

    def _load_config(self, args: argparse.Namespace, source: str) -> SyncConfig:
        skip = parse_skip_playlists(args.skip_playlists) if args.skip_playlists else None
        config = SyncConfig.from_env(
            env=self.env,
            source=source,
            destination=args.target,
            owner_filter=args.owner,
            skip_playlists=skip,
            sync_likes=args.sync_likes or None,
            like_all=args.like_all or None,
            diff_country=args.diff_country or None,
            debug=args.debug or None,
            debug_dir=args.debug_dir,
            duration_tolerance_ms=args.duration_tolerance_ms,
            match_threshold=args.match_threshold,
        )
        config.validate()
        return config

    def create_provider(self,
                        platform: str,
                        credentials: CredentialStore,
                        rates: Optional[Mapping[str, float]] = None,
                        metrics: Optional[MetricsCollector] = None) -> MusicProvider:
        """Build the adapter for ``platform`` from stored credentials."""
        limiter = limiter_for(platform, dict(rates) if rates else None, metrics)
        if platform == 'spotify':
            return SpotifyProvider(
                access_token=credentials.require('spotify', 'access_token'),
                refresh_token=credentials.get_token('spotify', 'refresh'),
                client_id=credentials.get('spotify', 'client_id'),
                client_secret=credentials.get('spotify', 'client_secret'),
                redirect_uri=credentials.get('spotify', 'redirect_uri') or 'http://localhost:8080/callback',
                market=credentials.get('spotify', 'market'),
                limiter=limiter,
            )
        if platform == 'tidal':
            return TidalProvider(
                access_token=credentials.require('tidal', 'access_token'),
                refresh_token=credentials.get_token('tidal', 'refresh'),
                token_type=credentials.get('tidal', 'token_type') or 'Bearer',
                limiter=limiter,
            )
        if platform == 'ytmusic':
            return YtMusicProvider(credentials.require('ytmusic', 'auth_file'), limiter=limiter)
        if platform == 'yandex':
            return YandexMusicProvider(credentials.require('yandex', 'access_token'), limiter=limiter)
        raise ConfigurationInvalid(f"Unsupported platform: {platform}")

    def _write_report(self, report: SyncReport, report_path: str) -> Optional[str]:
        try:
            os.makedirs(report_path, exist_ok=True)
            report_file = os.path.join(report_path, f"sync_report_{report.run_id}.json")
            with open(report_file, 'w', encoding='utf-8') as f:
                json.dump(report.to_json(), f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save report to {report_path}: {e}")
            return None
        logger.info(f"Report saved to: {report_file}")
        return report_file

    def _sync(self, args: argparse.Namespace) -> int:
        """Run one sync from a platform or from an export file."""
        source_name = 'json' if args.command == 'import' else args.source
        config = self._load_config(args, source_name)
        credentials = self._credentials(args)

        metrics = MetricsCollector()
        retry_policy = RetryPolicy(
            max_tries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            metrics=metrics,
        )
        if args.command == 'import':
            source = JsonFileProvider(args.file)
        else:
            source = self.create_provider(config.source, credentials, config.rate_limits, metrics)
        destination = self.create_provider(config.destination, credentials, config.rate_limits, metrics)

        matcher = TrackMatcher(
            threshold=config.match_threshold,
            duration_tolerance_ms=config.duration_tolerance_ms,
            title_weight=config.title_weight,
            album_weight=config.album_weight,
        )
        orchestrator = SyncOrchestrator(source, destination, matcher, config, retry_policy=retry_policy)

        previous_handlers = self._install_signal_handlers()
        try:
            report = orchestrator.run(self._cancel_event)
        except SyncAborted as e:
            if e.report is not None:
                self._write_report(e.report, args.report_path)
            logger.error(f"Sync failed: {e}")
            return EXIT_FAILURE
        finally:
            self._restore_signal_handlers(previous_handlers)

        self._write_report(report, args.report_path)
        totals = report.summary()
        print(f"Sync {report.run_id}: {totals['matched']} added, {totals['unmatched']} unmatched, "
              f"{totals['skipped']} skipped, {totals['failed']} failed, {totals['likesAdded']} likes added")
        if report.cancelled:
            logger.warning("Sync was cancelled before completion")
            return EXIT_CANCELLED
        return EXIT_OK

    def _reader(self, platform: str, args: argparse.Namespace) -> RetryingProvider:
        """Adapter for a read-only command, paced and retried like a sync."""
        settings = SyncConfig.from_env(env=self.env, source=platform)
        metrics = MetricsCollector()
        retry_policy = RetryPolicy(
            max_tries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            metrics=metrics,
        )
        provider = self.create_provider(platform, self._credentials(args), settings.rate_limits, metrics)
        return RetryingProvider(provider, retry_policy)

    def _export(self, args: argparse.Namespace) -> int:
        provider = self._reader(args.source, args)
        playlists = export_playlists(provider, args.dest, minify=args.minify, owner_filter=args.owner)
        print(f"Exported {len(playlists)} playlists to {args.dest}")
        return EXIT_OK

    def _list_playlists(self, args: argparse.Namespace) -> int:
        """List available playlists."""
        provider = self._reader(args.provider, args)
        playlists = provider.list_playlists(args.owner)

        print(f"Available playlists from {args.provider}:")
        print("-" * 50)
        for playlist in playlists:
            owner = playlist.owner_id or "unknown owner"
            print(f"{playlist.id}: {playlist.name} [{owner}] (tracks: {playlist.track_count})")
        return EXIT_OK

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)

        if not args.command:
            self.parser.print_help()
            return EXIT_FAILURE

        setup_logging(args.log_level, log_file=args.log_file, json_format=args.json_logs)

        try:
            if args.command in ('sync', 'import'):
                return self._sync(args)
            if args.command == 'export':
                return self._export(args)
            return self._list_playlists(args)
        except ConfigurationInvalid as e:
            logger.error(f"Invalid configuration: {e}")
            return EXIT_FAILURE
        except Unauthorized as e:
            logger.error(f"Authentication failed for {e.platform or 'provider'}: {e}")
            return EXIT_FAILURE
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return EXIT_CANCELLED
        except Exception as e:
            logger.exception(f"CLI error: {e}")
            return EXIT_FAILURE
        finally:
            logger.info(f"CLI execution time: {time.time() - self._start_time:.2f}s")


def main():
    """Main entry point."""
    sys.exit(CLI().run())


if __name__ == '__main__':
    main()
