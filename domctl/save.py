"""
Saving a running domain to a file.
"""

import logging
import os

from avocado.utils import genio

from domctl import domain_config
from domctl import platform
from domctl import savefile

LOG = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class ConfigUnavailableError(Exception):

    def __init__(self, domid, reason):
        Exception.__init__(self, domid, reason)
        self.domid = domid
        self.reason = reason

    def __str__(self):
        return "no configuration for domain %s: %s" % (self.domid,
                                                       self.reason)


def domain_configuration(ctx, domid, override_config_file=None):
    """
    The configuration a saved or migrated domain carries with it.

    :param override_config_file: Legacy configuration file to use instead
            of what the platform reports for domid.
    :raise ConfigUnavailableError: If neither source works.
    :return: DomainConfig.
    """
    if override_config_file:
        try:
            text = genio.read_file(override_config_file)
            return domain_config.DomainConfig.from_legacy(
                text, override_config_file)
        except (IOError, OSError) as details:
            raise ConfigUnavailableError(
                domid, "unable to read overridden config file: %s" % details)
        except domain_config.DomainConfigError as details:
            raise ConfigUnavailableError(domid, details)
    try:
        return ctx.platform.retrieve_domain_configuration(domid)
    except platform.PlatformError as details:
        raise ConfigUnavailableError(
            domid, "unable to retrieve domain configuration: %s" % details)


def prepare_config_data(ctx, domid, override_config_file=None):
    """
    Serialized configuration for the optional data block.

    :return: (DomainConfig, NUL terminated JSON bytes).
    """
    config = domain_configuration(ctx, domid, override_config_file)
    return config, config.to_stream_data()


def save_domain(ctx, domid, filename, checkpoint=False, leavepaused=False,
                override_config_file=None):
    """
    Write domid's configuration and state to filename.

    Unless checkpoint or leavepaused is given the domain is destroyed
    once it has been saved; with leavepaused it is left paused, with
    checkpoint it keeps running. A failed save resumes the domain.

    :return: exit status.
    """
    try:
        _, config_data = prepare_config_data(ctx, domid,
                                             override_config_file)
    except ConfigUnavailableError as details:
        LOG.error("%s", details)
        return EXIT_FAILURE
    if not config_data:
        LOG.info(" Savefile will not contain xl domain config")

    try:
        fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    except OSError as details:
        LOG.error("Failed to open temp file %s for writing: %s", filename,
                  details.strerror)
        return EXIT_FAILURE

    try:
        savefile.write_config(fd, config_data, filename)
    except OSError:
        os.close(fd)
        return EXIT_FAILURE

    try:
        ctx.platform.domain_suspend(domid, fd)
    except platform.PlatformError as details:
        LOG.error("Failed to save domain, resuming domain: %s", details)
        try:
            ctx.platform.domain_resume(domid, suspend_cancel=True)
        except platform.PlatformError as err:
            LOG.error("failed to resume domain %d: %s", domid, err)
        return EXIT_FAILURE
    finally:
        os.close(fd)

    try:
        if leavepaused or checkpoint:
            if leavepaused:
                ctx.platform.domain_pause(domid)
            ctx.platform.domain_resume(domid, suspend_cancel=True)
        else:
            ctx.platform.domain_destroy(domid)
    except platform.PlatformError as details:
        LOG.error("%s", details)
    return EXIT_SUCCESS
