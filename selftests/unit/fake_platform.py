"""
In-memory Platform used by the unit tests.
"""

import collections
import os

from domctl import context
from domctl import domain_config
from domctl import platform
from domctl import utils_config
from domctl import utils_misc

# What the fake writes as the opaque platform state stream
STATE = b"fake platform state stream\n".ljust(64, b".")
assert len(STATE) == 64


def make_config(name="vm1", **actions):
    actions = dict((key, domain_config.ShutdownAction.from_name(value))
                   for key, value in actions.items())
    return domain_config.DomainConfig(
        name, "00000000-0000-0000-0000-000000000001", actions,
        [domain_config.DiskConfig("xvda", "/images/vm1.img"),
         domain_config.DiskConfig("hdc", "/isos/install.iso", True)],
        {"memory": 512, "vcpus": 2})


class FakeDomain(object):

    def __init__(self, domid, name, config, paused=True):
        self.domid = domid
        self.name = name
        self.config = config
        self.paused = paused
        self.suspended = False


class FakePlatform(platform.Platform):

    """
    Records every call in `calls` as (name, args) tuples.

    Failures are injected with `failures[call_name] = code`; a code is
    consumed by the first call it fails.
    """

    def __init__(self, first_domid=5):
        self.calls = []
        self.domains = {}
        self.next_domid = first_domid
        self.failures = {}
        self.events = collections.deque()
        self.pending_events = collections.deque()
        self.userdata = {}
        self.free_memory = 1 << 30
        self.need_memory = 512 * 1024
        self.balloon_step = None
        self.cmdline = ""
        self.remus_code = platform.ERROR_FAIL

    def _call(self, name, *args):
        self.calls.append((name, args))
        code = self.failures.pop(name, None)
        if code is not None:
            raise platform.PlatformError(name, code)

    def call_names(self):
        return [name for name, _ in self.calls]

    def add_domain(self, name="vm1", config=None, paused=False):
        config = config or make_config(name)
        domid = self.next_domid
        self.next_domid += 1
        self.domains[domid] = FakeDomain(domid, name, config, paused)
        return domid

    def domain_create_new(self, config, console_ready=None):
        self._call("domain_create_new", config.name)
        domid = self.add_domain(config.name, config, paused=True)
        if console_ready is not None:
            console_ready(domid)
        return domid

    def domain_create_restore(self, config, restore_fd, send_back_fd,
                              params, console_ready=None):
        self._call("domain_create_restore", config.name, send_back_fd,
                   params.stream_version)
        state = utils_misc.read_exactly(restore_fd, len(STATE),
                                        "restore", "state")
        if state != STATE:
            raise platform.PlatformError("domain_create_restore",
                                         platform.ERROR_FAIL, "bad state")
        return self.add_domain(config.name, config, paused=True)

    def domain_soft_reset(self, config, domid, console_ready=None):
        self._call("domain_soft_reset", config.name, domid)
        self.domains[domid].config = config

    def domain_suspend(self, domid, fd, live=False, debug=False):
        self._call("domain_suspend", domid, live)
        utils_misc.write_exactly(fd, STATE, "suspend", "state")
        self.domains[domid].suspended = True

    def domain_resume(self, domid, suspend_cancel=True):
        self._call("domain_resume", domid)
        self.domains[domid].suspended = False

    def domain_destroy(self, domid):
        self._call("domain_destroy", domid)
        self.domains.pop(domid, None)

    def domain_pause(self, domid):
        self._call("domain_pause", domid)
        self.domains[domid].paused = True

    def domain_unpause(self, domid):
        self._call("domain_unpause", domid)
        self.domains[domid].paused = False

    def domain_rename(self, domid, old_name, new_name):
        self._call("domain_rename", domid, old_name, new_name)
        self.domains[domid].name = new_name

    def domain_preserve(self, domid, config, suffix, new_uuid):
        self._call("domain_preserve", domid, suffix, new_uuid)
        self.domains[domid].name = config.name + suffix

    def domain_core_dump(self, domid, filename):
        self._call("domain_core_dump", domid, filename)

    def domain_info(self, domid):
        self._call("domain_info", domid)
        if domid not in self.domains:
            raise platform.PlatformError("domain_info",
                                         platform.ERROR_DOMAIN_NOTFOUND)
        return self.domains[domid]

    def domain_remus_start(self, info, domid, send_fd, recv_fd):
        self._call("domain_remus_start", domid, info.interval, info.colo)
        raise platform.PlatformError("domain_remus_start", self.remus_code)

    def retrieve_domain_configuration(self, domid):
        self._call("retrieve_domain_configuration", domid)
        if domid not in self.domains:
            raise platform.PlatformError("retrieve_domain_configuration",
                                         platform.ERROR_DOMAIN_NOTFOUND)
        return self.domains[domid].config

    def userdata_retrieve(self, domid, key):
        self._call("userdata_retrieve", domid, key)
        return self.userdata.get((domid, key))

    def userdata_store(self, domid, key, data):
        self._call("userdata_store", domid, key)
        self.userdata[(domid, key)] = data

    def userdata_unlink(self, domid, key):
        self._call("userdata_unlink", domid, key)
        self.userdata.pop((domid, key), None)

    def domain_need_memory(self, build_info):
        self._call("domain_need_memory")
        return self.need_memory

    def get_free_memory(self):
        self._call("get_free_memory")
        return self.free_memory

    def set_memory_target(self, domid, target, relative=False):
        self._call("set_memory_target", domid, target, relative)

    def wait_for_memory_target(self, domid, timeout):
        self._call("wait_for_memory_target", domid, timeout)
        if self.balloon_step:
            self.free_memory += self.balloon_step

    def hypervisor_commandline(self):
        return self.cmdline

    def evenable_domain_death(self, domid):
        self._call("evenable_domain_death", domid)
        return ("death", domid)

    def evdisable_domain_death(self, handle):
        self._call("evdisable_domain_death", handle)

    def evenable_disk_eject(self, domid, vdev):
        self._call("evenable_disk_eject", domid, vdev)
        return ("eject", domid, vdev)

    def evdisable_disk_eject(self, handle):
        self._call("evdisable_disk_eject", handle)

    def event_wait(self):
        self._call("event_wait")
        if not self.events:
            raise platform.PlatformError("event_wait", platform.ERROR_FAIL,
                                         "no more events")
        event = self.events.popleft()
        if callable(event):
            event = event(self)
        return event

    def event_check(self):
        self._call("event_check")
        if self.pending_events:
            return self.pending_events.popleft()
        return None

    def cdrom_insert(self, domid, disk):
        self._call("cdrom_insert", domid, disk)


def close_all(*fds):
    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


def make_context(platform_obj, tmpdir, autoballoon="off", restart_delay=0):
    """
    Context whose lock, dumps and logs all live under tmpdir.
    """
    if not os.path.isdir(tmpdir):
        os.makedirs(tmpdir)
    content = ('autoballoon = "%s"\n'
               'lockfile = "%s"\n'
               'dump_dir = "%s"\n'
               'log_dir = "%s"\n'
               'restart_delay = %s\n' % (autoballoon,
                                         os.path.join(tmpdir, "lock"),
                                         os.path.join(tmpdir, "dump"),
                                         os.path.join(tmpdir, "log"),
                                         restart_delay))
    config = utils_config.GlobalConfig("<test>", content)
    return context.Context(platform_obj, config)
