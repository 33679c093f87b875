"""
Per-process orchestrator state.
"""

import logging

from domctl import defaults
from domctl import memory
from domctl import utils_child
from domctl import utils_config
from domctl import utils_lock
from domctl import utils_logfile

LOG = logging.getLogger(__name__)


class Context(object):

    """
    Everything one orchestrator process shares between operations.

    :param platform: The Platform binding.
    :param config: GlobalConfig; the file at defaults.GLOBAL_CONFIG is
            loaded when omitted.
    """

    def __init__(self, platform, config=None, lock=None, supervisor=None,
                 reclaimer=None):
        if config is None:
            config = utils_config.load_global_config()
        self.platform = platform
        self.config = config
        self.lock = lock or utils_lock.SingleInstanceLock(config.lockfile)
        self.supervisor = supervisor or utils_child.ChildProcessSupervisor()
        if reclaimer is None:
            reclaimer = memory.MemoryReclaimer(
                platform,
                memory.autoballoon_enabled(config.autoballoon, platform))
        self.reclaimer = reclaimer
        # Name of the domain being received, before the --incoming suffix
        self.common_domname = None
        utils_logfile.set_log_file_dir(config.log_dir)

    @property
    def dump_dir(self):
        return self.config.dump_dir or defaults.DUMP_DIR

    @property
    def restart_delay(self):
        delay = self.config.restart_delay
        if delay is None:
            return defaults.RESTART_DELAY
        return delay
