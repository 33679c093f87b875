from collections import UserDict


class ParamNotFound(KeyError):

    def __init__(self, key):
        KeyError.__init__(self, key)
        self.key = key

    def __str__(self):
        return ("Mandatory option '%s' is missing. Check the caller for "
                "typos/mistakes" % self.key)


class Params(UserDict):

    """
    A dict-like bag of options handed to every orchestrator entry point.

    Values may be real Python objects (True, 200) or strings as typed by
    an operator ("yes", "200"); the typed getters accept both.
    """

    def __getitem__(self, key):
        """ overrides the error messages of missing params[$key] """
        try:
            return UserDict.__getitem__(self, key)
        except KeyError:
            raise ParamNotFound(key)

    def get(self, key, default=None):
        """ overrides the behavior to catch ParamNotFound error"""
        try:
            return self[key]
        except ParamNotFound:
            return default

    def get_boolean(self, key, default=False):
        """
        Check if an option is set to a default affirmation or not.

        :param key: option key
        :type key: str
        :param bool default: whether to assume "yes" or "no" if the option
                             does not exist (defaults to False/"no").
        :return whether option is set to 'yes'
        :rtype: bool
        """
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        if value is None:
            return default
        value = str(value).lower()
        if value in ("yes", "on", "true", "1"):
            return True
        if value in ("no", "off", "false", "0"):
            return False
        raise ValueError("Cannot get boolean option value for %s: %s"
                         % (key, value))

    def get_numeric(self, key, default=0, target_type=int):
        """
        Get numeric value converting to integer if necessary.

        :param str key: option key
        :param int default: default numeric value
        :param type target_type: numeric type to return like int or float
        :return numerical type `target_type` converted option value
        :rtype: int or float
        """
        value = self.get(key, default)
        if value is None:
            value = default
        return target_type(value)

