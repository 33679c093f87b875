import os

CONFIG_DIR = "/etc/xen"
GLOBAL_CONFIG = os.path.join(CONFIG_DIR, "xl.conf")
LOCK_DIR = "/var/lock"
LOCK_FILE = os.path.join(LOCK_DIR, "xl")
DUMP_DIR = "/var/lib/xen/dump"
LOG_DIR = "/var/log/xen"

# Seconds to wait between tearing a domain down and bringing it up again
RESTART_DELAY = 2.0

# Migration transport child exit status is only waited for this long
MIGRATION_CHILD_WAIT = 2.0

# Bounded retries and per-retry wait used while ballooning down dom0
FREEMEM_RETRIES = 3
FREEMEM_WAIT = 10

DEFAULT_SSH_COMMAND = "ssh"
REMUS_DEFAULT_INTERVAL = 200

__all__ = ['CONFIG_DIR', 'GLOBAL_CONFIG', 'LOCK_DIR', 'LOCK_FILE',
           'DUMP_DIR', 'LOG_DIR', 'RESTART_DELAY', 'MIGRATION_CHILD_WAIT',
           'FREEMEM_RETRIES', 'FREEMEM_WAIT', 'DEFAULT_SSH_COMMAND',
           'REMUS_DEFAULT_INTERVAL']
