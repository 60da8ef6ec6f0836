#!/usr/bin/env python3
# vcfbringup.py - VCF Bring-up Main Runner
# Version 1.0 - October 2026
# Author - VCF Bring-up Team
# Runs the Bringup/ modules listed in config.ini, in order, stopping at the first failure

import datetime
import sys
import signal
import logging
import argparse
import threading

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Import core functions
import vcffunctions as vcf

DEFAULT_MODULES = ['SingleVmnic']


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='VCF bring-up network failover and post-configuration')
    parser.add_argument('--config', default=None,
                        help=f'Alternate config.ini (default {vcf.configini})')
    parser.add_argument('--dry-run', action='store_true',
                        help='Dry run - no actual changes')
    parser.add_argument('--resume', action='store_true',
                        help='Resume from the last completed step')
    parser.add_argument('--modules', nargs='+', default=None,
                        help='Modules to run instead of [BRINGUP] modules')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')
    return parser.parse_args(argv)


def run_sequence(modules, dry_run=False, resume=False, cancel=None):
    """
    Run each module in turn

    :return: name of the module that failed, or None
    """
    for module in modules:
        if cancel is not None and cancel.is_set():
            vcf.write_output(f'Cancelled before {module}')
            return module
        try:
            ok = vcf.run_module(module, dry_run=dry_run, resume=resume, cancel=cancel)
        except Exception as e:
            vcf.write_output(f'Module {module} failed: {type(e).__name__}: {e}')
            ok = False
        if not ok:
            return module
    return None


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    vcf.init(args.config)

    cancel = threading.Event()

    def _cancel(signum, frame):
        vcf.write_output(f'Signal {signum} received, stopping before the next step')
        cancel.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)

    modules = args.modules or vcf.get_config_list('BRINGUP', 'modules', DEFAULT_MODULES)
    vcf.write_output(f'Bring-up modules: {", ".join(modules)}')

    failed = run_sequence(modules, dry_run=args.dry_run, resume=args.resume, cancel=cancel)

    delta = datetime.datetime.now() - vcf.start_time
    run_mins = "{0:.2f}".format(delta.total_seconds() / 60)

    if failed:
        vcf.bringup_fail(f'{failed} did not complete after {run_mins} minutes')

    vcf.write_output(f'Bring-up finished - runtime was {run_mins} minutes')
    return 0


if __name__ == '__main__':
    sys.exit(main())
