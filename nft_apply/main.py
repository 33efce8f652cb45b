#!/usr/bin/env python3
"""
apply-config - apply an nftables ruleset with automatic rollback

The candidate is loaded, then the operator has --timeout seconds to confirm
that a NEW connection to the machine still works. Without a "y" the previous
ruleset is restored.

Usage examples:
  apply-config
  apply-config --source /root/new.nft --timeout 30
  apply-config --no-ips-suspend -l /var/log/nft-apply.log -v
"""

import argparse
import os
import sys
from pathlib import Path

from nft_apply import __version__
from nft_apply.appliers import ApplyOptions, GuardedApplier, SessionInterrupted
from nft_apply.appliers.exit_codes import NftApplyExitCodes, log_exit, signal_exit_code
from nft_apply.utils.config import ConfigManager, get_config_manager
from nft_apply.utils.error_handling import (
    ErrorFormatter,
    ParameterValidator,
    ValidationError,
    handle_errors,
    print_error,
    print_formatted,
    print_success,
    print_warning,
)
from nft_apply.utils.logging import StepReporter, get_logger, log_system_info, setup_logging
from nft_apply.utils.subprocess_manager import set_command_tracing


def _trace_requested(verbose: int) -> bool:
    return verbose >= 2 or os.getenv("TRACE") == "1"


def setup_app_logging(config_manager: ConfigManager, verbose: int = 0, quiet: bool = False,
                      log_file: str = None):
    """Configure logging for the application"""
    if quiet:
        level = 'WARNING'
    elif verbose:
        level = 'DEBUG'
    else:
        level = None  # configured level

    setup_logging(config_manager, level=level, log_file=log_file, console_colors=True)

    if _trace_requested(verbose):
        set_command_tracing(True)

    # Log system information
    if not quiet:
        log_system_info()


@handle_errors('nft-apply.apply', hide_technical=False)
def cmd_apply(args, config_manager: ConfigManager) -> int:
    """Apply the candidate ruleset with confirmation and rollback"""
    logger = get_logger('nft-apply.apply')

    options = ApplyOptions.from_config(config_manager.get_config())
    reporter = StepReporter(quiet=args.quiet)
    applier = GuardedApplier.from_options(options, reporter=reporter)
    reporter.message(f"Applying {options.source} ({options.timeout}s to confirm, then automatic rollback)")

    try:
        result = applier.apply(options.source, options.destination, options.timeout)
    except SessionInterrupted as e:
        print_warning(f"Interrupted by {e.signal_name}")
        return log_exit(signal_exit_code(e.signum), logger=logger)
    except KeyboardInterrupt:
        print_warning("Operation interrupted by user")
        return log_exit(NftApplyExitCodes.SIGINT_TERMINATION, logger=logger)

    if result.ips_resume_failed:
        print_warning(f"{options.ips_service} could not be restarted",
                      guidance=f"Run 'systemctl start {options.ips_service}'")

    if result.success:
        print_success(result.message)
    else:
        print_formatted(ErrorFormatter.format_error(result.error, hide_technical=not args.verbose))

    return log_exit(result.exit_code, result.message, logger)


def create_parser():
    """Create and configure argument parser"""
    parser = argparse.ArgumentParser(
        prog='apply-config',
        description='Apply an nftables ruleset, rolling back unless connectivity is confirmed',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument('-V', '--version', action='version', version=f'apply-config {__version__}')

    parser.add_argument('--source',
                        help='Candidate ruleset file (default: /etc/nftables-candidate.conf)')
    parser.add_argument('--destination',
                        help='Persisted ruleset file, must already exist (default: /etc/nftables.conf)')
    parser.add_argument('--timeout', type=int,
                        help='Seconds allowed for the apply and for the confirmation (default: 15)')
    parser.add_argument('--nft-path',
                        help='Path to the nft binary (default: /usr/sbin/nft)')

    ips_group = parser.add_mutually_exclusive_group()
    ips_group.add_argument('--ips-service',
                           help='Service stopped during the confirmation window (default: fail2ban)')
    ips_group.add_argument('--no-ips-suspend', action='store_true',
                           help='Leave the intrusion-prevention service running')

    parser.add_argument('--config', type=Path,
                        help='Configuration file (JSON or YAML)')
    parser.add_argument('--show-config', action='store_true',
                        help='Print the effective configuration and exit')

    parser.add_argument('-l', '--logfile',
                        help='Also write a full debug log to this file')
    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument('-v', '--verbose', action='count', default=0,
                              help='Verbose output, -vv also traces every command (like TRACE=1)')
    output_group.add_argument('-q', '--quiet', action='store_true',
                              help='Only print warnings and errors')

    return parser


def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.config:
        try:
            ParameterValidator.validate_file_readable(args.config, '--config')
        except ValidationError as e:
            print_formatted(ErrorFormatter.format_error(e))
            return NftApplyExitCodes.INVALID_USAGE

    config_manager = get_config_manager(args.config)

    # Setup logging
    setup_app_logging(config_manager, args.verbose, args.quiet, args.logfile)

    # Command line flags override file and environment settings
    config_manager.update_apply_config(source=args.source, destination=args.destination,
                                       timeout=args.timeout)
    config_manager.update_nftables_config(nft_path=args.nft_path)
    config_manager.update_ips_config(service=args.ips_service,
                                     suspend=False if args.no_ips_suspend else None)

    issues = config_manager.validate_config()
    if issues:
        for issue in issues:
            print_error(f"Invalid configuration: {issue}")
        return NftApplyExitCodes.INVALID_USAGE

    if args.show_config:
        config_manager.print_config()
        return NftApplyExitCodes.SUCCESS

    return cmd_apply(args, config_manager)


if __name__ == '__main__':
    sys.exit(main())
