"""
Exceptions raised by the CH559 bootloader tool.

Every failure is terminal for the operation in progress, nothing here is
retried. Catch CH559Error to handle all of them, or one of the family bases
(SetupError, TransportError, HandshakeError, DeviceStatusError,
FileValidationError) to react to a group.
"""


class CH559Error(Exception):
    """Base class for all errors of this tool"""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


# ---------------------------------------------------------------------------------
# device setup

class SetupError(CH559Error):
    pass


class DeviceNotFound(SetupError):
    def __init__(self, vendor_id=None, product_id=None, port=None, cause=None):
        if port is not None:
            msg = 'Serial port {} not found'.format(port)
        else:
            msg = 'No CH559 device found ({:04x}:{:04x}), check driver please'.format(vendor_id, product_id)
        super().__init__(msg, cause)
        self.port = port
        self.vendor_id = vendor_id
        self.product_id = product_id


class ConfigurationUnavailable(SetupError):
    def __init__(self, cause=None):
        super().__init__('failed to check configurations', cause)


class InterfaceUnavailable(SetupError):
    def __init__(self):
        super().__init__('failed to check interfaces')


class EndpointDiscoveryFailed(SetupError):
    def __init__(self, reason):
        super().__init__('failed to detect EPs: ' + reason)
        self.reason = reason


class ActivateConfigurationFailed(SetupError):
    def __init__(self, cause=None):
        super().__init__('failed to activate the target configuration', cause)


class ClaimInterfaceFailed(SetupError):
    def __init__(self, cause=None):
        super().__init__('failed to claim the target interface', cause)


# ---------------------------------------------------------------------------------
# raw exchange

class TransportError(CH559Error):
    pass


class TransportWriteShort(TransportError):
    def __init__(self, written, expected):
        super().__init__('failed to do a bulk write all data ({} of {} bytes)'.format(written, expected))
        self.written = written
        self.expected = expected


class TransportWriteFailed(TransportError):
    def __init__(self, cause=None, detail=None):
        msg = 'failed to do a bulk write'
        if detail is None and cause is not None:
            detail = cause
        if detail is not None:
            msg += ' ({})'.format(detail)
        super().__init__(msg, cause)


class TransportReadFailed(TransportError):
    def __init__(self, cause=None, received=None, expected=None, detail=None):
        if detail is None and cause is not None:
            detail = cause
        if detail is not None:
            msg = 'failed to do a bulk read response ({})'.format(detail)
        else:
            msg = 'failed to do a bulk read response ({} of {} bytes)'.format(received, expected)
        super().__init__(msg, cause)
        self.received = received
        self.expected = expected


# ---------------------------------------------------------------------------------
# detect / identify / key

class HandshakeError(CH559Error):
    """Handshake failure, `phase` is "detect" or "identify"."""

    def __init__(self, phase, message=None, cause=None):
        if message is None:
            message = 'failure'
            if cause is not None:
                message += ': {}'.format(cause)
        super().__init__('{} on {}'.format(message, phase), cause)
        self.phase = phase


class UnexpectedDetectResponse(HandshakeError):
    def __init__(self, chip_id):
        super().__init__('detect', 'failed to receive a valid response (chip id 0x{:02x})'.format(chip_id))
        self.chip_id = chip_id


class IdentifyFailed(HandshakeError):
    def __init__(self, message='failed to read the bootloader config', cause=None):
        super().__init__('identify', message, cause)


class KeyResetMismatch(CH559Error):
    def __init__(self, expected, received):
        super().__init__('failed to reset key (expected 0x{:02x}, received 0x{:02x})'.format(expected, received))
        self.expected = expected
        self.received = received


# ---------------------------------------------------------------------------------
# status byte of a flash command

class DeviceStatusError(CH559Error):
    action = 'execute'

    def __init__(self, status, address=None):
        msg = 'failed to {}'.format(self.action)
        if address is not None:
            msg += ' at address 0x{:04x}'.format(address)
        super().__init__(msg + ' (status 0x{:02x})'.format(status))
        self.status = status
        self.address = address


class EraseFailed(DeviceStatusError):
    action = 'erase'


class ReadFailed(DeviceStatusError):
    action = 'read'


class FlashFailed(DeviceStatusError):
    action = 'flash'


class VerifyFailed(DeviceStatusError):
    action = 'verify'


# ---------------------------------------------------------------------------------
# image files

class FileValidationError(CH559Error):
    pass


class NotARegularFile(FileValidationError):
    def __init__(self, path):
        super().__init__('not a regular file: {}'.format(path))
        self.path = path


class InvalidFileSize(FileValidationError):
    def __init__(self, message, size):
        super().__init__(message)
        self.size = size


class UnexpectedEndOfFile(FileValidationError):
    def __init__(self, offset, expected, received):
        super().__init__('unexpected EOF at 0x{:04x} ({} of {} bytes)'.format(offset, received, expected))
        self.offset = offset
        self.expected = expected
        self.received = received
