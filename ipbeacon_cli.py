#!/usr/bin/env python3

import argparse
import logging
import os
import sys

import ipbeacon
import ipbeacon_jobs
from ipbeacon import ConfigurationError, Family, NetworkError, PlatformError, PrivilegeError

logger = logging.getLogger('ipbeacon')

EXIT_OK = 0
EXIT_STORE = 1
EXIT_USAGE = 2
EXIT_DIRECTORY = 3
EXIT_NETWORK = 4
EXIT_PRIVILEGE = 5
EXIT_PLATFORM = 6


def build_parser():
    parser = argparse.ArgumentParser(
        prog='ipbeacon',
        description='Record the public IP address of this host in a synced folder.')
    parser.add_argument('-c', '--config', default=ipbeacon.CONFIG_FILE,
                        help='configuration file (default: %(default)s)')
    parser.add_argument('-v', '--verbose', action='store_true', help='log debug messages')

    family = argparse.ArgumentParser(add_help=False)
    family.add_argument('-6', '--ipv6', dest='family', action='store_const',
                        const=Family.IPV6, default=Family.IPV4,
                        help='use the IPv6 address instead of IPv4')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('get', parents=[family], help='print the current public address')

    save = commands.add_parser('save', parents=[family],
                               help='write the current public address to DIRECTORY if it changed')
    save.add_argument('directory', help='directory that receives IPv4.txt / IPv6.txt')
    mode = save.add_mutually_exclusive_group()
    mode.add_argument('--install', action='store_true',
                      help='install a job that saves the address every 15 minutes')
    mode.add_argument('--print', dest='emit', action='store_true',
                      help='also print the fetched address')
    return parser


def get(args, config):
    client = ipbeacon.AddressLookupClient(config)
    print(client.fetch(args.family))
    return EXIT_OK


def save(args, config):
    if args.install:
        registrar = ipbeacon_jobs.default_registrar(config)
        builder = ipbeacon_jobs.JobDefinitionBuilder(registrar, config_file=os.path.abspath(args.config))
        manager = ipbeacon_jobs.ScheduledJobManager(registrar, builder)
        job = manager.install(args.directory, args.family, ipbeacon_jobs.is_elevated())
        print('installed %s, running every %d minutes' % (job.name, job.interval.total_seconds() // 60))
        return EXIT_OK

    reconciler = ipbeacon.AddressReconciler(ipbeacon.AddressLookupClient(config))
    ip_address = reconciler.reconcile(args.directory, args.family, emit_result=args.emit)
    if args.emit:
        if not ip_address:
            return EXIT_NETWORK
        print(ip_address)
    return EXIT_OK


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = ipbeacon.load_config(args.config)
    ipbeacon.setup_logging(config, args.verbose)

    command = get if args.command == 'get' else save
    try:
        return command(args, config)
    except ConfigurationError as e:
        logger.error(e)
        return EXIT_DIRECTORY
    except NetworkError as e:
        logger.error(e)
        return EXIT_NETWORK
    except PrivilegeError as e:
        logger.error(e)
        return EXIT_PRIVILEGE
    except PlatformError as e:
        logger.error(e)
        return EXIT_PLATFORM
    except OSError as e:
        logger.error('could not update the address file: %s' % e)
        return EXIT_STORE


if __name__ == '__main__':
    sys.exit(main())
