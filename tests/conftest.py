import pytest

from ipbeacon import AddressFileStore, NetworkError, PlatformError


class StubClient:

    def __init__(self, *addresses):
        self.addresses = list(addresses)
        self.calls = []

    def fetch(self, family):
        self.calls.append(family)
        ip_address = self.addresses.pop(0)
        if isinstance(ip_address, Exception):
            raise ip_address
        return ip_address


class CountingStore(AddressFileStore):

    def __init__(self):
        self.writes = []

    def write(self, directory, family, ip_address):
        self.writes.append((directory, family, ip_address))
        super().write(directory, family, ip_address)


class RecordingRegistrar:
    privilege = 'root'
    suffix = '.txt'

    def __init__(self, fail=False):
        self.fail = fail
        self.jobs = {}
        self.runs = []
        self.seen_paths = []

    def render(self, job):
        return ' '.join(job.command).encode('utf-8')

    def install(self, name, path):
        self.seen_paths.append(path)
        if self.fail:
            raise PlatformError('scheduler service is not running')
        with open(path, 'rb') as file:
            self.jobs[name] = file.read()

    def run(self, name):
        self.runs.append(name)


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def network_error():
    return NetworkError('lookup of https://ipv4.icanhazip.com returned HTTP 503')


@pytest.fixture
def make_client():
    return StubClient


@pytest.fixture
def registrar():
    return RecordingRegistrar()


@pytest.fixture
def failing_registrar():
    return RecordingRegistrar(fail=True)
