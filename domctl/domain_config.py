"""
Domain configuration as the orchestrator sees it.

Only what the orchestrator itself needs is modelled: the name and UUID,
the per-reason shutdown actions and the disk list (for eject
notifications). Everything else is build information kept as an opaque
dict and handed to the platform untouched.

Two textual forms exist. JSON is what the orchestrator writes into save
files and migration streams; the legacy ``key = value`` form is what an
operator writes and what config_update stores for the next restart.
"""

import copy
import enum
import json
import logging

from avocado.utils import astring

from domctl import utils_config

LOG = logging.getLogger(__name__)

# Legacy keys with a meaning of their own; everything else is build info
_NAME_KEYS = ('name', 'uuid')
_DISK_KEY = 'disk'


class DomainConfigError(Exception):

    def __init__(self, source, reason):
        Exception.__init__(self, source, reason)
        self.source = source
        self.reason = reason

    def __str__(self):
        return "Failed to parse config from %s: %s" % (self.source,
                                                       self.reason)


class ShutdownAction(enum.Enum):
    DESTROY = "destroy"
    RESTART = "restart"
    RESTART_RENAME = "rename-restart"
    PRESERVE = "preserve"
    COREDUMP_DESTROY = "coredump-destroy"
    COREDUMP_RESTART = "coredump-restart"
    SOFT_RESET = "soft-reset"

    @classmethod
    def from_name(cls, name):
        """
        :raise ValueError: For a name that is not a known action.
        """
        try:
            return cls(name)
        except ValueError:
            raise ValueError("Unknown on_xxx action \"%s\"" % name)


# Which option holds the action for which shutdown reason
ACTION_OPTIONS = ('on_poweroff', 'on_reboot', 'on_watchdog', 'on_crash',
                  'on_soft_reset')

DEFAULT_ACTIONS = {
    'on_poweroff': ShutdownAction.DESTROY,
    'on_reboot': ShutdownAction.RESTART,
    'on_watchdog': ShutdownAction.DESTROY,
    'on_crash': ShutdownAction.DESTROY,
    'on_soft_reset': ShutdownAction.SOFT_RESET,
}


class DiskConfig(object):

    def __init__(self, vdev, target=None, removable=False, **extra):
        self.vdev = vdev
        self.target = target
        self.removable = removable
        self.extra = extra

    @classmethod
    def from_spec(cls, spec):
        """
        Parse a legacy disk specification.

        Both the positional form ``target,vdev[:cdrom],access`` and the
        keyed form ``vdev=xvda, target=/path, devtype=cdrom`` are read;
        a cdrom device is removable.
        """
        positional = []
        keyed = {}
        for word in spec.split(','):
            word = word.strip()
            if not word:
                continue
            if '=' in word:
                key, value = word.split('=', 1)
                keyed[key.strip()] = value.strip()
            else:
                positional.append(word)
        if 'vdev' not in keyed and len(positional) > 1:
            keyed['vdev'] = positional[1]
        if 'target' not in keyed and positional:
            keyed['target'] = positional[0]
        if 'access' not in keyed and len(positional) > 2:
            keyed['access'] = positional[2]
        vdev = keyed.pop('vdev', None)
        if not vdev:
            raise ValueError("no vdev specified in disk spec \"%s\"" % spec)
        if vdev.endswith(':cdrom'):
            vdev = vdev[:-len(':cdrom')]
            keyed['devtype'] = 'cdrom'
        removable = keyed.get('devtype') == 'cdrom'
        return cls(vdev, keyed.pop('target', None), removable, **keyed)

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        vdev = data.pop('vdev')
        return cls(vdev, data.pop('target', None),
                   bool(data.pop('removable', False)), **data)

    def to_dict(self):
        data = {'vdev': self.vdev, 'removable': self.removable}
        if self.target is not None:
            data['target'] = self.target
        data.update(self.extra)
        return data

    def __repr__(self):
        return "DiskConfig(%r)" % self.to_dict()


class DomainConfig(object):

    """
    Parsed configuration of one domain.

    :param name: Domain name.
    :param uuid: Domain UUID as text, or None to let the platform pick.
    :param actions: Dict mapping on_xxx options to ShutdownAction.
    :param disks: List of DiskConfig.
    :param build_info: Everything else, passed through to the platform.
    """

    def __init__(self, name=None, uuid=None, actions=None, disks=None,
                 build_info=None):
        self.name = name
        self.uuid = uuid
        self.actions = dict(DEFAULT_ACTIONS)
        if actions:
            self.actions.update(actions)
        self.disks = list(disks or [])
        self.build_info = dict(build_info or {})

    @property
    def on_poweroff(self):
        return self.actions['on_poweroff']

    @property
    def on_reboot(self):
        return self.actions['on_reboot']

    @property
    def on_watchdog(self):
        return self.actions['on_watchdog']

    @property
    def on_crash(self):
        return self.actions['on_crash']

    @property
    def on_soft_reset(self):
        return self.actions['on_soft_reset']

    def copy(self):
        return copy.deepcopy(self)

    def renamed(self, name):
        """
        Return a copy of this configuration carrying another name.
        """
        new = self.copy()
        new.name = name
        return new

    def to_dict(self):
        return {
            'c_info': {'name': self.name, 'uuid': self.uuid},
            'b_info': self.build_info,
            'disks': [disk.to_dict() for disk in self.disks],
            'actions': dict((key, value.value)
                            for key, value in self.actions.items()),
        }

    def to_json(self):
        return json.dumps(self.to_dict(), indent=4, sort_keys=True)

    def to_stream_data(self):
        """
        JSON text, NUL terminated, as carried in save files and
        migration streams.
        """
        return self.to_json().encode("utf-8") + b"\0"

    @classmethod
    def from_json(cls, data, source="<saved>"):
        """
        :param data: JSON text or bytes; a trailing NUL is ignored.
        :raise DomainConfigError: If data is not a valid configuration.
        """
        text = astring.to_text(data).rstrip("\0")
        try:
            raw = json.loads(text)
            c_info = raw.get('c_info', {})
            actions = {}
            for key, value in raw.get('actions', {}).items():
                if key not in ACTION_OPTIONS:
                    raise ValueError("unknown action option %s" % key)
                actions[key] = ShutdownAction.from_name(value)
            disks = [DiskConfig.from_dict(disk)
                     for disk in raw.get('disks', [])]
            return cls(c_info.get('name'), c_info.get('uuid'), actions,
                       disks, raw.get('b_info', {}))
        except (ValueError, TypeError, KeyError, AttributeError) as details:
            raise DomainConfigError(source, details)

    @classmethod
    def from_legacy(cls, data, source="<legacy>", extra_config=None):
        """
        Parse the ``key = value`` configuration format.

        :param data: Configuration text or bytes.
        :param source: Name of the configuration, for messages.
        :param extra_config: Further ``key=value`` lines, which override
                the ones in data.
        :raise DomainConfigError: On a syntax error or a bad value.
        """
        text = append_extra_config(astring.to_text(data).rstrip("\0"),
                                   extra_config)
        try:
            parsed = utils_config.SectionlessConfig.from_string(text, source)
        except utils_config.ConfigError as details:
            raise DomainConfigError(source, details)
        config = cls()
        try:
            for key in parsed:
                value = parsed.get_value(key)
                if key in _NAME_KEYS:
                    setattr(config, key, str(value))
                elif key in ACTION_OPTIONS:
                    config.actions[key] = ShutdownAction.from_name(value)
                elif key == _DISK_KEY:
                    if isinstance(value, str):
                        value = [value]
                    config.disks = [DiskConfig.from_spec(spec)
                                    for spec in value]
                else:
                    config.build_info[key] = value
        except ValueError as details:
            raise DomainConfigError(source, details)
        return config

    def __repr__(self):
        return "DomainConfig(name=%r, uuid=%r)" % (self.name, self.uuid)


def append_extra_config(text, extra_config):
    """
    Append the extra ``key=value`` lines to a legacy configuration.
    """
    if not extra_config:
        return text
    return "%s\n%s\n" % (text, extra_config)


def parse(data, in_json, source):
    """
    Parse a configuration in whichever format the caller says it is in.
    """
    LOG.info("Parsing config from %s", source)
    if in_json:
        return DomainConfig.from_json(data, source)
    return DomainConfig.from_legacy(data, source)
