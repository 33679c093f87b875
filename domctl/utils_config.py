import ast
import configparser
import logging
import os.path
from io import StringIO

from avocado.utils import genio

from domctl import defaults

LOG = logging.getLogger(__name__)


class ConfigError(Exception):

    def __init__(self, msg):
        Exception.__init__(self, msg)
        self.msg = msg

    def __str__(self):
        return self.msg


class ConfigNoOptionError(ConfigError):

    def __init__(self, option, path):
        ConfigError.__init__(self, "no option %s" % option)
        self.option = option
        self.path = path

    def __str__(self):
        return "There's no option %s in config file %s." % (
            self.option, self.path)


class ConfigUnknownKeyTypeError(ConfigError):

    def __init__(self, key, key_type):
        ConfigError.__init__(self, "unknown key type %s" % key_type)
        self.key = key
        self.key_type = key_type

    def __str__(self):
        return "Unknown type %s for key %s." % (self.key_type, self.key)


class ConfigUnknownKeyError(ConfigError):

    def __init__(self, key):
        ConfigError.__init__(self, "unknown key %s" % key)
        self.key = key

    def __str__(self):
        return 'Unknown config key %s' % self.key


class SectionlessConfig(object):

    """
    Read-only wrapper around configparser for sectionless ``key = value``
    files, the format of both the global configuration and the legacy
    domain configuration.

    Example config file test.conf:

    ># This is a comment line.
    >a = 1
    >b = ["hi", "there"]
    >c = "hello"
    >e = ["hi",
    >    "there"]

    >>> config = utils_config.SectionlessConfig('test.conf')
    >>> config.get_int('a')
    1
    >>> config.get_list('e')
    ['hi', 'there']
    """

    def __init__(self, path, content=None):
        """
        :param path: Path of the file, or a name used in messages when
                content is given.
        :param content: Text to parse instead of reading path.
        """
        self.path = path
        self.parser = configparser.ConfigParser(interpolation=None,
                                                strict=False)
        # Prevent of converting option names to lower case
        self.parser.optionxform = str
        if content is None:
            content = genio.read_file(path)
        self.content = content
        try:
            self.parser.read_file(StringIO('[root]\n' + content), path)
        except configparser.Error as details:
            raise ConfigError("cannot parse %s: %s" % (path, details))

    @classmethod
    def from_string(cls, content, name="<string>"):
        return cls(name, content)

    def __len__(self):
        return len(self.parser.items('root'))

    def __getitem__(self, option):
        try:
            return self.parser.get('root', option)
        except configparser.NoOptionError:
            raise ConfigNoOptionError(option, self.path)

    def __contains__(self, item):
        return self.parser.has_option('root', item)

    def __iter__(self):
        return iter(self.parser.options('root'))

    def __str__(self):
        write_fp = StringIO()
        self.parser.write(write_fp)
        return write_fp.getvalue().split('\n', 1)[1]

    def get_raw(self, option):
        return self[option]

    def get_string(self, option):
        raw_str = self[option].strip()
        if raw_str.startswith('"') and raw_str.endswith('"'):
            raw_str = raw_str[1:-1]
        elif raw_str.startswith("'") and raw_str.endswith("'"):
            raw_str = raw_str[1:-1]
        else:
            raise ValueError("Invalid value for string: %s" % raw_str)
        return raw_str

    def get_int(self, option):
        return int(self.get_raw(option))

    def get_float(self, option):
        return float(self.get_raw(option))

    def get_boolean(self, option):
        try:
            bool_str = self.get_string(option).lower()
        except ValueError:
            bool_str = str(self.get_int(option))

        if bool_str in ["1", "yes", "true", "on"]:
            return True
        if bool_str in ["0", "no", "false", "off"]:
            return False
        raise ValueError("Invalid value for boolean: %s" % bool_str)

    def get_list(self, option):
        list_str = self.get_raw(option)
        return [str(i) for i in ast.literal_eval(list_str)]

    def get_value(self, option):
        """
        Return the option as the Python literal it spells, or as the raw
        (unquoted) text when it is not a literal.
        """
        raw_str = self.get_raw(option).strip()
        try:
            return ast.literal_eval(raw_str)
        except (ValueError, SyntaxError):
            return raw_str


class TypedConfig(SectionlessConfig):

    """
    Options of a sectionless file accessed as typed attributes.

    "__option_types__" maps every known option to its type ("boolean",
    "int", "string", "float" or "list"); "__option_defaults__" holds the
    value returned for options absent from the file.
    """
    __option_types__ = {}
    __option_defaults__ = {}

    def __getattr__(self, key):
        if key.startswith('_') or key not in self.__option_types__:
            raise ConfigUnknownKeyError(key)
        key_type = self.__option_types__[key]
        if key_type not in ['boolean', 'int', 'float', 'string', 'list']:
            raise ConfigUnknownKeyTypeError(key, key_type)
        get_func = getattr(self, 'get_' + key_type)
        try:
            return get_func(key)
        except ConfigNoOptionError:
            return self.__option_defaults__.get(key)


class GlobalConfig(TypedConfig):

    """
    Orchestrator-wide settings (xl.conf).

    A missing file is not an error; every option then has its default.
    """
    __option_types__ = {
        'autoballoon': 'string',
        'lockfile': 'string',
        'dump_dir': 'string',
        'log_dir': 'string',
        'restart_delay': 'float',
    }
    __option_defaults__ = {
        'autoballoon': 'auto',
        'lockfile': defaults.LOCK_FILE,
        'dump_dir': defaults.DUMP_DIR,
        'log_dir': defaults.LOG_DIR,
        'restart_delay': defaults.RESTART_DELAY,
    }

    def __init__(self, path=defaults.GLOBAL_CONFIG, content=None):
        if content is None and not os.path.isfile(path):
            LOG.debug("global config %s not found, using defaults", path)
            content = ""
        super(GlobalConfig, self).__init__(path, content)


def load_global_config(path=defaults.GLOBAL_CONFIG):
    """
    Read the global configuration, checking the option values.

    :raise ConfigError: If the file cannot be parsed or an option has
                        an invalid value.
    """
    config = GlobalConfig(path)
    for key in config.__option_types__:
        try:
            getattr(config, key)
        except ValueError as details:
            raise ConfigError("invalid %s option in %s: %s"
                              % (key, path, details))
    if config.autoballoon not in ('on', 'off', 'auto'):
        raise ConfigError("invalid autoballoon option \"%s\" in %s"
                          % (config.autoballoon, path))
    if config.restart_delay < 0:
        raise ConfigError("restart_delay must not be negative in %s" % path)
    return config
