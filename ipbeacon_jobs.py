"""Install the address check as a recurring operating system job.

A job runs ``ipbeacon_cli save <directory>`` every fifteen minutes under the
system account. Windows jobs go through the Task Scheduler, everything else
through systemd. Installing the job for a family again replaces it.
"""

import json
import logging
import os
import shlex
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from xml.sax.saxutils import escape

from ipbeacon import (AddressFileStore, ConfigurationError, Family, PlatformError, PrivilegeError,
                      load_config)

logger = logging.getLogger(__name__)

INTERVAL = timedelta(minutes=15)
TIME_LIMIT = timedelta(minutes=10)


@dataclass
class JobDefinition:
    name: str
    command: list
    start: datetime
    interval: timedelta = INTERVAL
    time_limit: timedelta = TIME_LIMIT
    network_required: bool = True
    allow_on_batteries: bool = True
    allow_start_on_demand: bool = True
    run_only_if_idle: bool = False
    description: str = ''


@dataclass
class JobDefinitionDocument:
    job: JobDefinition
    path: str


def is_elevated():
    if os.name == 'nt':
        import ctypes
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    return os.geteuid() == 0


def _run(command):
    logger.debug('running %s' % subprocess.list2cmdline(command))
    try:
        result = subprocess.run(command, capture_output=True, text=True)
    except OSError as e:
        raise PlatformError('could not run %s: %s' % (command[0], e)) from e
    if result.returncode != 0:
        output = (result.stderr or result.stdout or '').strip()
        raise PlatformError('%s exited with status %d: %s' % (command[0], result.returncode, output))
    return result.stdout


def _iso_duration(delta):
    return 'PT%dM' % (delta.total_seconds() // 60)


TASK_XML = '''<?xml version="1.0" encoding="UTF-16"?>
<Task version="1.2" xmlns="http://schemas.microsoft.com/windows/2004/02/mit/task">
  <RegistrationInfo>
    <Description>{description}</Description>
  </RegistrationInfo>
  <Triggers>
    <TimeTrigger>
      <Repetition>
        <Interval>{interval}</Interval>
        <StopAtDurationEnd>false</StopAtDurationEnd>
      </Repetition>
      <StartBoundary>{start}</StartBoundary>
      <Enabled>true</Enabled>
    </TimeTrigger>
  </Triggers>
  <Principals>
    <Principal id="Author">
      <UserId>S-1-5-18</UserId>
      <RunLevel>LeastPrivilege</RunLevel>
    </Principal>
  </Principals>
  <Settings>
    <MultipleInstancesPolicy>IgnoreNew</MultipleInstancesPolicy>
    <DisallowStartIfOnBatteries>{disallow_on_batteries}</DisallowStartIfOnBatteries>
    <StopIfGoingOnBatteries>{disallow_on_batteries}</StopIfGoingOnBatteries>
    <AllowHardTerminate>true</AllowHardTerminate>
    <StartWhenAvailable>false</StartWhenAvailable>
    <RunOnlyIfNetworkAvailable>{network_required}</RunOnlyIfNetworkAvailable>
    <IdleSettings>
      <StopOnIdleEnd>true</StopOnIdleEnd>
      <RestartOnIdle>false</RestartOnIdle>
    </IdleSettings>
    <AllowStartOnDemand>{allow_start_on_demand}</AllowStartOnDemand>
    <Enabled>true</Enabled>
    <Hidden>false</Hidden>
    <RunOnlyIfIdle>{run_only_if_idle}</RunOnlyIfIdle>
    <WakeToRun>false</WakeToRun>
    <ExecutionTimeLimit>{time_limit}</ExecutionTimeLimit>
    <Priority>7</Priority>
  </Settings>
  <Actions Context="Author">
    <Exec>
      <Command>{executable}</Command>
      <Arguments>{arguments}</Arguments>
    </Exec>
  </Actions>
</Task>
'''


def _bool(value):
    return 'true' if value else 'false'


class SchtasksRegistrar:
    """Windows Task Scheduler, driven through schtasks.exe."""

    privilege = 'Administrator'
    suffix = '.xml'
    schtasks = 'schtasks'

    def render(self, job):
        text = TASK_XML.format(
            description=escape(job.description),
            interval=_iso_duration(job.interval),
            start=job.start.replace(microsecond=0).isoformat(),
            disallow_on_batteries=_bool(not job.allow_on_batteries),
            network_required=_bool(job.network_required),
            allow_start_on_demand=_bool(job.allow_start_on_demand),
            run_only_if_idle=_bool(job.run_only_if_idle),
            time_limit=_iso_duration(job.time_limit),
            executable=escape(job.command[0]),
            arguments=escape(subprocess.list2cmdline(job.command[1:])),
        )
        return text.encode('utf-16')

    def install(self, name, path):
        # /F replaces an existing task of the same name
        _run([self.schtasks, '/Create', '/TN', name, '/XML', path, '/RU', 'SYSTEM', '/F'])

    def run(self, name):
        _run([self.schtasks, '/Run', '/TN', name])


class SystemdRegistrar:
    """A oneshot service plus a timer unit, installed system-wide."""

    privilege = 'root'
    suffix = '.json'
    systemctl = 'systemctl'

    def __init__(self, unit_dir='/etc/systemd/system'):
        self.unit_dir = unit_dir

    def render(self, job):
        network = ''
        if job.network_required:
            network = 'Wants=network-online.target\nAfter=network-online.target\n'
        service = (
            '[Unit]\n'
            'Description=%s\n'
            '%s'
            '\n'
            '[Service]\n'
            'Type=oneshot\n'
            'ExecStart=%s\n'
            'TimeoutStartSec=%d\n'
            'NoNewPrivileges=yes\n'
        ) % (job.description, network, shlex.join(job.command), job.time_limit.total_seconds())
        # every 15 minutes, anchored at the minute and second of installation
        minutes = int(job.interval.total_seconds() // 60)
        timer = (
            '[Unit]\n'
            'Description=%s\n'
            '\n'
            '[Timer]\n'
            'OnCalendar=*-*-* *:%02d/%d:%02d\n'
            'AccuracySec=1s\n'
            'Unit=%s.service\n'
            '\n'
            '[Install]\n'
            'WantedBy=timers.target\n'
        ) % (job.description, job.start.minute % minutes, minutes, job.start.second, job.name)
        return json.dumps({'service': service, 'timer': timer}, indent=2).encode('utf-8')

    def install(self, name, path):
        with open(path, 'r', encoding='utf-8') as file:
            units = json.load(file)
        for kind in ('service', 'timer'):
            unit_file = os.path.join(self.unit_dir, '%s.%s' % (name, kind))
            try:
                with open(unit_file, 'w', encoding='utf-8') as file:
                    file.write(units[kind])
            except OSError as e:
                raise PlatformError('could not write %s: %s' % (unit_file, e)) from e
        _run([self.systemctl, 'daemon-reload'])
        _run([self.systemctl, 'enable', '%s.timer' % name])
        # restart picks up a changed schedule when replacing an existing timer
        _run([self.systemctl, 'restart', '%s.timer' % name])

    def run(self, name):
        _run([self.systemctl, 'start', '--no-block', '%s.service' % name])


def default_registrar(config=None):
    if sys.platform == 'win32':
        return SchtasksRegistrar()
    config = config or load_config()
    return SystemdRegistrar(config['DEFAULT']['systemd.unit.dir'])


class JobDefinitionBuilder:

    def __init__(self, registrar, program=None, config_file=None):
        self.registrar = registrar
        self.program = program or [sys.executable, '-m', 'ipbeacon_cli']
        self.config_file = config_file

    def command(self, directory, family):
        command = list(self.program)
        if self.config_file:
            command += ['--config', self.config_file]
        command += ['save', directory]
        if family is Family.IPV6:
            command.append('--ipv6')
        return command

    def build(self, directory, family, now):
        """Render the job for ``family`` into a temporary file.

        The caller owns the returned document and must delete it.
        """
        job = JobDefinition(
            name=family.job_name,
            command=self.command(directory, family),
            start=now.replace(microsecond=0),
            description='Record the public %s address of this host in %s' % (family.label, directory),
        )
        content = self.registrar.render(job)
        fd, path = tempfile.mkstemp(prefix='%s-' % job.name, suffix=self.registrar.suffix)
        with os.fdopen(fd, 'wb') as file:
            file.write(content)
        logger.debug('wrote job definition for %s to %s' % (job.name, path))
        return JobDefinitionDocument(job=job, path=path)


class ScheduledJobManager:

    def __init__(self, registrar=None, builder=None, store=None):
        self.registrar = registrar or default_registrar()
        self.builder = builder or JobDefinitionBuilder(self.registrar)
        self.store = store or AddressFileStore()

    def install(self, directory, family, elevated, now=None):
        """Register (or replace) the recurring job for ``family`` and start it once."""
        if not elevated:
            raise PrivilegeError('installing the %s job requires %s privileges'
                                 % (family.label, self.registrar.privilege))
        if not self.store.directory_exists(directory):
            raise ConfigurationError('directory %s does not exist or is not a directory' % directory)

        document = self.builder.build(os.path.abspath(directory), family, now or datetime.now())
        try:
            self.registrar.install(document.job.name, document.path)
            logger.info('installed job %s' % document.job.name)
            self.registrar.run(document.job.name)
            logger.info('started job %s' % document.job.name)
        finally:
            if os.path.exists(document.path):
                os.remove(document.path)
        return document.job
