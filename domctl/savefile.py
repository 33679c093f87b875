"""
Save-file container format.

A saved (or migrating) domain stream starts with a fixed header followed
by a block of optional data carrying the domain configuration; the
platform's own state stream comes right after and is opaque to us::

    offset 0   [32 bytes] magic
    offset 32  [4 bytes]  byte order sentinel
    offset 36  [4 bytes]  mandatory flags
    offset 40  [4 bytes]  optional flags
    offset 44  [4 bytes]  optional data length
    offset 48  [optional data length bytes]
                 [4 bytes] config length
                 [config length bytes] configuration text

Integers are in the producing host's byte order. A reader detects a
foreign byte order through the sentinel but never converts it.
"""

import collections
import io
import logging
import struct

from domctl import utils_misc

LOG = logging.getLogger(__name__)

MAGIC = b"Xen saved domain, xl format\n \0 \r"
BYTEORDER_VALUE = 0x01020304

MANDATORY_FLAG_JSON = 1 << 0
MANDATORY_FLAG_STREAMV2 = 1 << 1
MANDATORY_FLAG_ALL = MANDATORY_FLAG_JSON | MANDATORY_FLAG_STREAMV2

_HEADER = struct.Struct("=32sIIII")
_U32 = struct.Struct("=I")
HEADER_SIZE = _HEADER.size


class SaveFileError(Exception):
    pass


class FormatError(SaveFileError):

    def __init__(self, source, reason):
        SaveFileError.__init__(self, source, reason)
        self.source = source
        self.reason = reason

    def __str__(self):
        return "%s: %s" % (self.source, self.reason)


class TruncatedStreamError(SaveFileError):

    def __init__(self, source, what, wanted=None, got=None):
        SaveFileError.__init__(self, source, what, wanted, got)
        self.source = source
        self.what = what
        self.wanted = wanted
        self.got = got

    def __str__(self):
        msg = "%s truncated while reading %s" % (self.source, self.what)
        if self.wanted is not None:
            msg += " (wanted %s bytes, got %s)" % (self.wanted, self.got)
        return msg


class SaveFileHeader(collections.namedtuple("SaveFileHeader",
                                            ["mandatory_flags",
                                             "optional_flags",
                                             "optional_data_len"])):

    """
    Fixed-size header preceding the optional data block.
    """

    __slots__ = ()

    @property
    def config_in_json(self):
        return bool(self.mandatory_flags & MANDATORY_FLAG_JSON)

    @property
    def stream_version(self):
        if self.mandatory_flags & MANDATORY_FLAG_STREAMV2:
            return 2
        return 1

    def describe(self):
        return "0x%x/0x%x/%d" % (self.mandatory_flags, self.optional_flags,
                                 self.optional_data_len)

    def pack(self):
        return _HEADER.pack(MAGIC, BYTEORDER_VALUE, self.mandatory_flags,
                            self.optional_flags, self.optional_data_len)


class OptionalDataBuilder(object):

    """
    Append-only accumulator for the optional data block.
    """

    def __init__(self):
        self._chunks = []
        self._length = 0

    def __len__(self):
        return self._length

    def add(self, data):
        if data:
            self._chunks.append(bytes(data))
            self._length += len(data)
        return self

    def add_u32(self, value):
        return self.add(_U32.pack(value))

    def build(self):
        return b"".join(self._chunks)


def build(config_data, mandatory_flags=MANDATORY_FLAG_STREAMV2,
          optional_flags=0):
    """
    Build the header and optional data block for a save stream.

    The flags are written exactly as given.

    :param config_data: Configuration bytes (may be empty).
    :param mandatory_flags: Mandatory flags.
    :param optional_flags: Advisory flags.
    :return: (SaveFileHeader, optional data bytes)
    """
    config_data = config_data or b""
    optdata = OptionalDataBuilder()
    optdata.add_u32(len(config_data))
    optdata.add(config_data)
    header = SaveFileHeader(mandatory_flags, optional_flags, len(optdata))
    return header, optdata.build()


def encode(config_data, mandatory_flags=MANDATORY_FLAG_STREAMV2,
           optional_flags=0):
    """
    Serialize the header and optional data block for a save stream.

    :return: Bytes to put in front of the platform's state stream.
    """
    header, optdata = build(config_data, mandatory_flags, optional_flags)
    return header.pack() + optdata


def unpack_header(raw, source="stream"):
    """
    Validate and unpack the fixed part of a save stream.

    :param raw: Exactly HEADER_SIZE bytes.
    :raise FormatError: On bad magic, foreign byte order or unknown
                        mandatory flags.
    :return: A SaveFileHeader.
    """
    magic, byteorder, mandatory, optional, optlen = _HEADER.unpack(raw)
    if magic != MAGIC:
        raise FormatError(source, "File has wrong magic number - corrupt "
                                  "or for a different tool?")
    if byteorder != BYTEORDER_VALUE:
        raise FormatError(source, "File has wrong byte order")
    badflags = mandatory & ~MANDATORY_FLAG_ALL
    if badflags:
        raise FormatError(source, "Savefile has mandatory flag(s) 0x%x "
                                  "which are not supported; need newer xl"
                          % badflags)
    return SaveFileHeader(mandatory, optional, optlen)


def _read(stream, size, source, what):
    try:
        return utils_misc.read_exactly(stream, size, source, what)
    except utils_misc.ShortReadError as details:
        raise TruncatedStreamError(source, what, details.wanted, details.got)


def decode(stream, source="stream"):
    """
    Read the header and the optional data block from a save stream.

    Nothing past the optional data block is consumed, so the platform's
    state stream can be read from the same descriptor afterwards.

    :param stream: bytes, a raw file descriptor or a binary file object.
    :param source: Name of the stream, for messages.
    :raise FormatError: If the header is invalid; the optional data is
                        not read in that case.
    :raise TruncatedStreamError: On a short read.
    :return: (SaveFileHeader, optional data bytes)
    """
    if isinstance(stream, (bytes, bytearray)):
        stream = io.BytesIO(stream)
    header = unpack_header(_read(stream, HEADER_SIZE, source, "header"),
                           source)
    LOG.info("Loading new save file %s (new xl fmt info %s)", source,
             header.describe())
    optdata = b""
    if header.optional_data_len:
        optdata = _read(stream, header.optional_data_len, source, "optdata")
    return header, optdata


def parse_optional_data(header, optdata, source="stream"):
    """
    Extract the configuration carried in the optional data block.

    :param header: The SaveFileHeader the block came with.
    :param optdata: The optional data bytes.
    :raise TruncatedStreamError: If a field claims more bytes than the
                                 declared block holds.
    :return: Configuration bytes, or None when the block is empty.
    """
    limit = min(header.optional_data_len, len(optdata))
    if not limit:
        return None
    LOG.info(" Savefile contains xl domain config%s",
             " in JSON format" if header.config_in_json else "")
    if limit < _U32.size:
        raise TruncatedStreamError(source, "config length", _U32.size, limit)
    config_len = _U32.unpack(optdata[:_U32.size])[0]
    left = limit - _U32.size
    if left < config_len:
        raise TruncatedStreamError(source, "config data", config_len, left)
    return bytes(optdata[_U32.size:_U32.size + config_len])


def read_config(stream, source="stream"):
    """
    Decode a save stream prefix and return its header and configuration.
    """
    header, optdata = decode(stream, source)
    return header, parse_optional_data(header, optdata, source)


def write_config(stream, config_data, source="stream"):
    """
    Write the header and configuration in front of a state stream.

    The configuration we write is always JSON, so the JSON flag is set
    whenever one is carried.

    :param stream: A raw file descriptor or a binary file object.
    :param config_data: Configuration bytes.
    """
    mandatory_flags = MANDATORY_FLAG_STREAMV2
    if config_data:
        mandatory_flags |= MANDATORY_FLAG_JSON
    header, optdata = build(config_data, mandatory_flags)
    utils_misc.write_exactly(stream, header.pack() + optdata, source,
                             "header")
    LOG.info("Saving to %s new xl format (info %s)", source,
             header.describe())
