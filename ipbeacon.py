"""Publish this host's public IP address into a synced folder.

The current public address of a family is fetched from a lookup service and
written to ``IPv4.txt`` or ``IPv6.txt`` in a target directory, but only when it
differs from what is already recorded there.
"""

import configparser
import enum
import ipaddress
import logging
import os
import stat
import tempfile

import requests

logger = logging.getLogger(__name__)

DEFAULTS = {
    'lookup.ipv4.url': 'https://ipv4.icanhazip.com',
    'lookup.ipv6.url': 'https://ipv6.icanhazip.com',
    'lookup.timeout': '30',
    'log.file': '',
    'log.level': 'INFO',
    'systemd.unit.dir': '/etc/systemd/system',
}

CONFIG_FILE = os.environ.get(
    'IPBEACON_CONFIG',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'ipbeacon.ini'))


def load_config(path=CONFIG_FILE):
    config = configparser.ConfigParser()
    config.read_dict({'DEFAULT': DEFAULTS})
    config.read(path)
    config.path = os.path.abspath(path)
    return config


def log_path(config):
    """Absolute path of the log file, relative names taken from the config file's directory."""
    log_file = config['DEFAULT']['log.file']
    if not log_file:
        return ''
    base = os.path.dirname(getattr(config, 'path', os.path.abspath(CONFIG_FILE)))
    return os.path.join(base, os.path.expanduser(log_file))


def setup_logging(config, verbose=False):
    root = logging.getLogger()
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    log_file = log_path(config)
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)
    root.setLevel(logging.DEBUG if verbose else config['DEFAULT']['log.level'].upper())


class BeaconError(Exception):
    pass


class ConfigurationError(BeaconError):
    """The target directory is missing or is not a directory."""


class NetworkError(BeaconError):
    """The lookup request failed or returned nothing usable."""


class PlatformError(BeaconError):
    """The operating system refused to register or start the job."""


class PrivilegeError(PermissionError):
    pass


class Family(enum.Enum):
    IPV4 = 4
    IPV6 = 6

    @property
    def sentinel(self):
        return '0.0.0.0' if self is Family.IPV4 else '::'

    @property
    def file_name(self):
        return 'IPv%d.txt' % self.value

    @property
    def job_name(self):
        return 'ipbeacon-ipv%d' % self.value

    @property
    def label(self):
        return 'IPv%d' % self.value


class AddressLookupClient:
    """Ask a plain-text "what is my IP" service for the public address.

    The default service (icanhazip) asks callers to stay below one request
    per five minutes; the scheduled job runs every fifteen.
    """

    def __init__(self, config=None):
        config = config or load_config()
        defaults = config['DEFAULT']
        self.urls = {
            Family.IPV4: defaults['lookup.ipv4.url'],
            Family.IPV6: defaults['lookup.ipv6.url'],
        }
        self.timeout = float(defaults['lookup.timeout'])

    def fetch(self, family):
        url = self.urls[family]
        try:
            request = requests.get(url, headers={'Connection': 'close'}, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError('lookup of %s failed: %s' % (url, e)) from e

        if request.status_code != 200:
            raise NetworkError('lookup of %s returned HTTP %d' % (url, request.status_code))

        ip_address = request.text.strip()
        if not ip_address:
            raise NetworkError('lookup of %s returned an empty response' % url)

        try:
            parsed = ipaddress.ip_address(ip_address)
        except ValueError:
            raise NetworkError('lookup of %s returned %r, which is not an address' % (url, ip_address)) from None
        if parsed.version != family.value:
            raise NetworkError('lookup of %s returned %s, which is not an %s address' % (url, ip_address, family.label))

        logger.debug('public %s address is %s' % (family.label, ip_address))
        return ip_address


class AddressFileStore:

    def directory_exists(self, path):
        return os.path.isdir(path)

    def path(self, directory, family):
        return os.path.join(directory, family.file_name)

    def read(self, directory, family):
        file_name = self.path(directory, family)
        if not os.path.isfile(file_name):
            logger.debug('no %s record in %s' % (family.label, directory))
            return family.sentinel
        with open(file_name, 'r', encoding='utf-8', newline='') as file:
            ip_address = file.read()
        # strip only the terminator our own write added
        ip_address = ip_address.rstrip('\r\n')
        logger.debug('file %s address is %s' % (family.label, ip_address))
        return ip_address

    def write(self, directory, family, ip_address):
        file_name = self.path(directory, family)
        fd, temp_name = tempfile.mkstemp(prefix='.%s.' % family.file_name, dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as file:
                file.write(ip_address + '\n')
            self._copy_permissions(directory, file_name, temp_name)
            os.replace(temp_name, file_name)
        except BaseException:
            if os.path.exists(temp_name):
                os.remove(temp_name)
            raise
        logger.info('changed file %s address to %s' % (family.label, ip_address))

    def _copy_permissions(self, directory, file_name, temp_name):
        # mkstemp creates 0600; the record must stay readable to the sync client
        if os.path.exists(file_name):
            source = os.stat(file_name)
            os.chmod(temp_name, stat.S_IMODE(source.st_mode))
        else:
            source = os.stat(directory)
            umask = os.umask(0)
            os.umask(umask)
            os.chmod(temp_name, 0o666 & ~umask)
        if hasattr(os, 'geteuid') and os.geteuid() == 0:
            os.chown(temp_name, source.st_uid, source.st_gid)


class AddressReconciler:

    def __init__(self, client=None, store=None):
        self.client = client or AddressLookupClient()
        self.store = store or AddressFileStore()

    def reconcile(self, directory, family, emit_result=False):
        """Record the current public address of ``family`` in ``directory``.

        The file is rewritten only when the fetched address differs from the
        stored one. A failed lookup leaves the file untouched; the next
        scheduled run tries again. Returns the fetched address (``None`` if
        none was obtained) when ``emit_result`` is set.
        """
        if not self.store.directory_exists(directory):
            raise ConfigurationError('directory %s does not exist or is not a directory' % directory)

        file_ip_address = self.store.read(directory, family)

        try:
            router_ip_address = self.client.fetch(family)
        except NetworkError as e:
            logger.warning('no %s address this cycle: %s' % (family.label, e))
            router_ip_address = None

        if router_ip_address and router_ip_address != file_ip_address:
            logger.info('%s address changed from %s to %s' % (family.label, file_ip_address, router_ip_address))
            self.store.write(directory, family, router_ip_address)
        elif router_ip_address:
            logger.debug('%s address unchanged' % family.label)

        if emit_result:
            return router_ip_address
