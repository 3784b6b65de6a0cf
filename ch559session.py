"""
Session with the CH559 bootloader: detect, identify and the one time key reset.
"""

import logging

from ch559errors import (
    HandshakeError,
    IdentifyFailed,
    KeyResetMismatch,
    TransportError,
    TransportWriteFailed,
    UnexpectedDetectResponse,
)
from ch559transport import SerialTransport, open_usb

logger = logging.getLogger(__name__)

CHIP_ID = 0x59

CMD_DETECT = 0xa1
CMD_RESET_KEY = 0xa3
CMD_IDENTIFY = 0xa7

# 0xa1, len 0x12, then 0x59 0x11 and "MCU ISP & WCH.CN"
DETECT_SEQ = bytes((
    CMD_DETECT, 0x12, 0x00, 0x59, 0x11, 0x4d, 0x43, 0x55, 0x20, 0x49, 0x53, 0x50, 0x20, 0x26, 0x20,
    0x57, 0x43, 0x48, 0x2e, 0x43, 0x4e))
IDENTIFY_SEQ = bytes((CMD_IDENTIFY, 0x02, 0x00, 0x1f, 0x00))
KEY_LENGTH = 0x30

STATUS_OFFSET = 4
DETECT_REPLY_LEN = 6
IDENTIFY_REPLY_LEN = 30
KEY_REPLY_LEN = 6


def connect():
    """Open the bootloader over USB and run the detect handshake."""
    return Session(open_usb())


def connect_serial(port):
    return Session(SerialTransport(port))


class Session:
    """Owns the transport and the device identity.

    The key reset runs lazily, at most once per session: a successful
    exchange makes `key_is_reset` sticky, a failed one leaves it False so the
    next privileged command tries again.
    """

    def __init__(self, transport):
        self.transport = transport
        self.chip_id = 0
        self.version = 'unknown'
        self.checksum_seed = 0
        self.key_is_reset = False
        try:
            self._detect()
            self._identify()
        except Exception:
            self.close()
            raise

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    def _detect(self):
        try:
            reply = self.transport.exchange(DETECT_SEQ, DETECT_REPLY_LEN)
        except TransportError as ex:
            raise HandshakeError('detect', cause=ex) from ex
        if reply[STATUS_OFFSET] != CHIP_ID:
            raise UnexpectedDetectResponse(reply[STATUS_OFFSET])
        self.chip_id = reply[STATUS_OFFSET]
        logger.debug('ChipID = 0x%02x', self.chip_id)

    def _identify(self):
        try:
            reply = self.transport.exchange(IDENTIFY_SEQ, IDENTIFY_REPLY_LEN)
        except TransportError as ex:
            raise IdentifyFailed(cause=ex) from ex
        self.version = '{}.{}{}'.format(reply[19], reply[20], reply[21])
        # checksum of the config reply seeds the key
        self.checksum_seed = sum(reply[22:26]) & 0xff
        logger.info('CH559 Found (BootLoader: v%s)', self.version)
        logger.debug('Checksum: 0x%02x', self.checksum_seed)

    def reset_key(self):
        if self.key_is_reset:
            return
        request = bytes((CMD_RESET_KEY, KEY_LENGTH, 0x00)) + bytes([self.checksum_seed]) * KEY_LENGTH
        reply = self.exchange(request, KEY_REPLY_LEN)
        if reply[STATUS_OFFSET] != self.chip_id:
            raise KeyResetMismatch(self.chip_id, reply[STATUS_OFFSET])
        self.key_is_reset = True
        logger.debug('key reset')

    def exchange(self, request, response_len):
        if self.transport is None:
            raise TransportWriteFailed(detail='session is closed')
        return self.transport.exchange(request, response_len)

    def command(self, request, response_len):
        """Privileged command: resets the key first if that did not happen yet."""
        self.reset_key()
        return self.exchange(request, response_len)
