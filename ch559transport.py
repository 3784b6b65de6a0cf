"""
Raw command channels to the CH559 mask-ROM bootloader.

Every bootloader command is one write immediately followed by one read of a
known size, so both transports only offer exchange(request, response_len).

USB:  the bootloader enumerates as 4348:55e0 with one bulk IN and one bulk OUT
      endpoint on its first interface. You need pyusb (pip install pyusb).
      On windows use the zadig tool https://zadig.akeo.ie/ to install the
      libusb-win32 driver.
UART: the same command set wrapped in 0x57 0xab ... checksum frames,
      replies come back as 0x55 0xaa ... checksum. You need pyserial.
"""

import errno
import logging
import platform
from collections import namedtuple
from time import sleep

import serial
import usb.core
import usb.util

from ch559errors import (
    ActivateConfigurationFailed,
    ClaimInterfaceFailed,
    ConfigurationUnavailable,
    DeviceNotFound,
    EndpointDiscoveryFailed,
    InterfaceUnavailable,
    TransportReadFailed,
    TransportWriteFailed,
    TransportWriteShort,
)

logger = logging.getLogger(__name__)

VENDOR_ID = 0x4348
PRODUCT_ID = 0x55e0
TIMEOUT_MS = 1000

SERIAL_BAUD = 57600
SERIAL_TIMEOUT = 0.15
SERIAL_TX_PREAMBLE = b'\x57\xab'
SERIAL_RX_PREAMBLE = b'\x55\xaa'

UDEV_HINT = '''No access to USB Device, configure udev or execute as root (sudo)
For udev create /etc/udev/rules.d/99-ch55x.rules
with one line:
---
SUBSYSTEM=="usb", ATTR{idVendor}=="4348", ATTR{idProduct}=="55e0", MODE="666"
---
Restart udev: sudo service udev restart
Reconnect device, should work now!'''

Endpoints = namedtuple('Endpoints', ['in_addr', 'out_addr'])


def hexdump(data):
    return ':'.join('{:02x}'.format(x) for x in data)


def _log_exchange(request, response):
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug('tx = %s', hexdump(request))
        logger.debug('rx = %s', hexdump(response))


def find_endpoints(interface):
    """Take the first IN and the first OUT endpoint of the interface, both must be bulk."""
    ep_in = None
    ep_out = None
    for ep in interface:
        direction = usb.util.endpoint_direction(ep.bEndpointAddress)
        if direction == usb.util.ENDPOINT_IN and ep_in is None:
            ep_in = ep
        elif direction == usb.util.ENDPOINT_OUT and ep_out is None:
            ep_out = ep
    if ep_in is None:
        raise EndpointDiscoveryFailed('no IN endpoint')
    if ep_out is None:
        raise EndpointDiscoveryFailed('no OUT endpoint')
    for name, ep in (('IN', ep_in), ('OUT', ep_out)):
        if usb.util.endpoint_type(ep.bmAttributes) != usb.util.ENDPOINT_TYPE_BULK:
            raise EndpointDiscoveryFailed('{} endpoint 0x{:02x} is not bulk'.format(name, ep.bEndpointAddress))
    return Endpoints(ep_in.bEndpointAddress, ep_out.bEndpointAddress)


def _access_denied(ex):
    return getattr(ex, 'errno', None) == errno.EACCES and platform.system() == 'Linux'


def open_usb(vendor_id=VENDOR_ID, product_id=PRODUCT_ID, timeout=TIMEOUT_MS):
    """Find the bootloader, discover its endpoints and claim the interface."""
    dev = usb.core.find(idVendor=vendor_id, idProduct=product_id)
    if dev is None:
        raise DeviceNotFound(vendor_id, product_id)
    try:
        try:
            cfg = dev.get_active_configuration()
        except usb.core.USBError as ex:
            raise ConfigurationUnavailable(ex) from ex
        intf = next(iter(cfg), None)
        if intf is None:
            raise InterfaceUnavailable()
        endpoints = find_endpoints(intf)
        logger.debug('endpoints: in 0x%02x, out 0x%02x', endpoints.in_addr, endpoints.out_addr)

        try:
            if dev.is_kernel_driver_active(intf.bInterfaceNumber):
                dev.detach_kernel_driver(intf.bInterfaceNumber)
        except (NotImplementedError, usb.core.USBError) as ex:
            # not supported on every backend, set_configuration reports real trouble
            logger.debug('kernel driver check skipped: %s', ex)
        try:
            dev.set_configuration(cfg.bConfigurationValue)
        except usb.core.USBError as ex:
            if _access_denied(ex):
                logger.error(UDEV_HINT)
            raise ActivateConfigurationFailed(ex) from ex
        try:
            usb.util.claim_interface(dev, intf.bInterfaceNumber)
        except usb.core.USBError as ex:
            if _access_denied(ex):
                logger.error(UDEV_HINT)
            raise ClaimInterfaceFailed(ex) from ex
    except Exception:
        usb.util.dispose_resources(dev)
        raise
    return UsbTransport(dev, endpoints, intf.bInterfaceNumber, timeout)


class UsbTransport:
    """Bulk OUT request followed by a bulk IN response, no retries."""

    def __init__(self, device, endpoints, interface_number=0, timeout=TIMEOUT_MS):
        self.device = device
        self.endpoints = endpoints
        self.interface_number = interface_number
        self.timeout = timeout

    def exchange(self, request, response_len):
        request = bytes(request)
        if self.device is None:
            raise TransportWriteFailed(detail='device is closed')
        try:
            written = self.device.write(self.endpoints.out_addr, request, self.timeout)
        except usb.core.USBError as ex:
            raise TransportWriteFailed(ex) from ex
        if written != len(request):
            raise TransportWriteShort(written, len(request))
        try:
            response = bytes(self.device.read(self.endpoints.in_addr, response_len, self.timeout))
        except usb.core.USBError as ex:
            raise TransportReadFailed(ex) from ex
        _log_exchange(request, response)
        if len(response) < response_len:
            raise TransportReadFailed(received=len(response), expected=response_len)
        return response

    def close(self):
        if self.device is None:
            return
        try:
            usb.util.release_interface(self.device, self.interface_number)
        except usb.core.USBError as ex:
            logger.debug('release interface: %s', ex)
        usb.util.dispose_resources(self.device)
        self.device = None


def checksum(data):
    chks = 0
    for x in data:
        chks = (chks + x) & 0xff
    return chks


class SerialTransport:
    """UART ISP port of the bootloader, the MCU is reset into it with the DTR line."""

    def __init__(self, port, baudrate=SERIAL_BAUD, timeout=SERIAL_TIMEOUT, ser=None):
        if ser is None:
            try:
                ser = serial.Serial(port=port, baudrate=baudrate, timeout=timeout)
            except serial.SerialException as ex:
                raise DeviceNotFound(port=port, cause=ex) from ex
            logger.info('Port %s %d baud open.', ser.name, baudrate)
            logger.info('Attempting to start the bootloader via the DTR line...')
            sleep(0.01)
            ser.dtr = True
            sleep(0.15)
            ser.dtr = False
            sleep(0.1)
            ser.dsrdtr = False
        self.ser = ser

    def exchange(self, request, response_len):
        if self.ser is None:
            raise TransportWriteFailed(detail='port is closed')
        request = bytes(request)
        pkt = SERIAL_TX_PREAMBLE + request + bytes([checksum(request)])
        try:
            written = self.ser.write(pkt)
        except serial.SerialException as ex:
            raise TransportWriteFailed(ex) from ex
        if written is not None and written != len(pkt):
            raise TransportWriteShort(written, len(pkt))
        try:
            reply = self.ser.read(response_len + 3)
        except serial.SerialException as ex:
            raise TransportReadFailed(ex) from ex
        _log_exchange(pkt, reply)
        if len(reply) < response_len + 3 or reply[:2] != SERIAL_RX_PREAMBLE:
            raise TransportReadFailed(received=len(reply), expected=response_len + 3)
        response = reply[2:-1]
        if checksum(response) != reply[-1]:
            raise TransportReadFailed(detail='checksum error')
        return bytes(response)

    def close(self):
        if self.ser is not None and self.ser.is_open:
            self.ser.close()
            logger.info('Closing %s port.', self.ser.name)
        self.ser = None
