"""
Host memory reclamation ahead of domain creation.
"""

import logging
import re

from domctl import defaults
from domctl import platform

LOG = logging.getLogger(__name__)

# The domain memory is taken from when the host runs short
RECLAIM_DOMID = 0


def autoballoon_enabled(mode, platform_obj):
    """
    Resolve the autoballoon setting to a boolean.

    :param mode: "on", "off" or "auto", or a boolean.
    :param platform_obj: Platform queried for the hypervisor command line
            in "auto" mode.
    :return: True when dom0 may be ballooned down. "auto" means yes unless
             the administrator pinned dom0 memory with dom0_mem.
    """
    if isinstance(mode, bool):
        return mode
    if mode == "on":
        return True
    if mode == "off":
        return False
    cmdline = platform_obj.hypervisor_commandline() or ""
    return not re.search(r"(^|\s)dom0_mem=", cmdline)


class MemoryReclaimer(object):

    """
    Makes sure the host has enough free memory for a new domain.

    >>> reclaimer = MemoryReclaimer(platform, autoballoon=True)
    >>> if not reclaimer.ensure_capacity(config.build_info):
    ...     raise MemoryReclamationFailure(config.name)
    """

    def __init__(self, platform_obj, autoballoon=True,
                 retries=defaults.FREEMEM_RETRIES,
                 wait=defaults.FREEMEM_WAIT):
        self.platform = platform_obj
        self.autoballoon = autoballoon
        self.retries = retries
        self.wait = wait

    def ensure_capacity(self, build_info):
        """
        Free memory for a domain built from build_info if needed.

        :return: True if there is, or there now is, enough memory (or
                 ballooning is disabled); False if memory could not be
                 freed or the platform reported an error.
        """
        if not self.autoballoon:
            return True
        try:
            need = self.platform.domain_need_memory(build_info)
            for _ in range(self.retries):
                free = self.platform.get_free_memory()
                if free >= need:
                    return True
                LOG.debug("need %d KiB, %d KiB free: asking domain %d for "
                          "the difference", need, free, RECLAIM_DOMID)
                self.platform.set_memory_target(RECLAIM_DOMID, free - need,
                                                relative=True)
                # wait until dom0 reaches its target, as long as we are
                # making progress
                self.platform.wait_for_memory_target(RECLAIM_DOMID,
                                                     self.wait)
        except platform.PlatformError as details:
            LOG.error("memory reclamation failed: %s", details)
            return False
        LOG.error("not enough free memory after %d attempts", self.retries)
        return False
