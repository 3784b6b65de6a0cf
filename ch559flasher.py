#!/usr/bin/env python3
"""
this tool can erase, read, write and verify the code and data flash of the CH559
through its USB bootloader (bootloader version 2.x)
usage:

to flash an example blink.bin file (the code flash is erased first):
python3 ch559flasher.py -w blink.bin

to verify the code flash against the blink.bin file
python3 ch559flasher.py -c blink.bin

to erase the code flash:
python3 ch559flasher.py -e

to dump / write / verify the 1KB data flash:
python3 ch559flasher.py -R data.bin
python3 ch559flasher.py -W data.bin
python3 ch559flasher.py -C data.bin

-f fills the unused area up to the end of the region with random values
generated from the -s seed, so a later compare with the same seed matches.

In addition, a log of usb tx and rx packets can be written for all operations, simply add --log option:
python3 ch559flasher.py --log=<logfilename> -w blink.bin

you need to install pyusb to use this flasher: pip install pyusb
on linux configure udev (see ch559transport.py) or run as root
"""

import argparse
import logging
import os
import stat
import sys
from enum import Enum
from time import localtime, strftime

from ch559errors import (
    CH559Error,
    EraseFailed,
    FlashFailed,
    HandshakeError,
    InvalidFileSize,
    NotARegularFile,
    ReadFailed,
    SetupError,
    UnexpectedEndOfFile,
    VerifyFailed,
)
from ch559fill import FillGenerator
from ch559session import STATUS_OFFSET, connect, connect_serial

__version__ = '1.0'

logger = logging.getLogger(__name__)

CMD_ERASE = 0xa4
CMD_WRITE_CODE = 0xa5
CMD_VERIFY = 0xa6
CMD_ERASE_DATA = 0xa9
CMD_WRITE_DATA = 0xaa
CMD_READ_DATA = 0xab

ERASE_BLOCKS = 60           # 1KB blocks, 0xf000 bytes of code flash
CHUNK_SIZE = 0x38           # payload ceiling of one command
CODE_SIZE = 0xf000
CODE_MAX_SIZE = 0xf400
DATA_SIZE = 0x400
DATA_FLASH_ADDR = 0xf000
STATUS_REPLY_LEN = 6
READ_HEADER_LEN = 6

EXIT_OK = 0
EXIT_USAGE = 64
EXIT_IOERR = 74

txt_sep = '---------------------------------------------------------------------------------'


class Region(Enum):
    CODE = 'code'
    DATA = 'data'


def build_read_request(offset, size):
    # `offset` is relative to DATA_FLASH_ADDR
    return bytes((CMD_READ_DATA, 0x00, 0x00, offset & 0xff, (offset >> 8) & 0xff, 0x00, 0x00, size))


def build_write_request(command, address, data, chip_id):
    """Header plus payload padded with 0xff to an 8 byte boundary.

    The last byte of every 8 byte block is xored with the chip id.
    """
    if len(data) > CHUNK_SIZE:
        raise ValueError('chunk of {} bytes is too large'.format(len(data)))
    length = (len(data) + 7) & ~7
    payload = bytearray(data) + b'\xff' * (length - len(data))
    for x in range(7, length, 8):
        payload[x] ^= chip_id
    header = bytes((command, length + 5, 0x00, address & 0xff, (address >> 8) & 0xff, 0x00, 0x00, length))
    return header + bytes(payload)


def chunks(total):
    for offset in range(0, total, CHUNK_SIZE):
        yield offset, min(CHUNK_SIZE, total - offset)


class CH559Flasher:
    """Erase, read, write and verify on top of a connected Session."""

    def __init__(self, session, fill=None):
        self.session = session
        self.fill = fill if fill is not None else FillGenerator()

    def _status_command(self, request, error, address=None):
        reply = self.session.command(request, STATUS_REPLY_LEN)
        if reply[STATUS_OFFSET] != 0x00:
            raise error(reply[STATUS_OFFSET], address)

    def erase(self):
        self._status_command(bytes((CMD_ERASE, 0x01, 0x00, ERASE_BLOCKS)), EraseFailed)
        logger.info('Flash Erased')

    def erase_data(self):
        self._status_command(bytes((CMD_ERASE_DATA, 0x00, 0x00, 0x00)), EraseFailed)
        logger.info('Data Flash Erased')

    def read_data(self, file_name, progress=None):
        with open(file_name, 'wb') as output_file:
            for offset, size in chunks(DATA_SIZE):
                if progress:
                    progress(offset, DATA_SIZE)
                reply = self.session.command(build_read_request(offset, size), READ_HEADER_LEN + size)
                if reply[STATUS_OFFSET] != 0x00:
                    logger.error('Read failed at 0x%04x', offset)
                    raise ReadFailed(reply[STATUS_OFFSET], offset)
                output_file.write(reply[READ_HEADER_LEN:READ_HEADER_LEN + size])
                if progress:
                    progress(offset + size, DATA_SIZE)
        logger.info('Read %d bytes of data flash', DATA_SIZE)

    def write(self, file_name, region=Region.CODE, fullfill=False, progress=None):
        self.write_verify(file_name, True, region, fullfill, progress)

    def verify(self, file_name, region=Region.CODE, fullfill=False, progress=None):
        self.write_verify(file_name, False, region, fullfill, progress)

    @staticmethod
    def check_file(file_name, region, fullfill):
        st = os.stat(file_name)
        if not stat.S_ISREG(st.st_mode):
            raise NotARegularFile(file_name)
        file_length = st.st_size
        if region is Region.DATA:
            if not fullfill and file_length != DATA_SIZE:
                raise InvalidFileSize('file size should be 0x400', file_length)
            if file_length > DATA_SIZE:
                raise InvalidFileSize('file size is too large for data', file_length)
        else:
            if file_length > CODE_MAX_SIZE:
                raise InvalidFileSize('file size is too large for code', file_length)
            if file_length > CODE_SIZE:
                logger.warning('code will run over data region as file size is larger than 0xF000')
        return file_length

    @staticmethod
    def target_length(file_length, region, fullfill):
        if not fullfill:
            return file_length
        if region is Region.DATA:
            return DATA_SIZE
        return CODE_MAX_SIZE if file_length > CODE_SIZE else CODE_SIZE

    def write_verify(self, file_name, write, region, fullfill=False, progress=None):
        """Program (write=True) or compare (write=False) a raw binary image.

        The device does the compare itself: a verify sends the same chunks as a
        write, with the verify command, and reports a nonzero status on mismatch.
        """
        file_length = self.check_file(file_name, region, fullfill)
        length = self.target_length(file_length, region, fullfill)
        data_region = region is Region.DATA
        if write:
            command = CMD_WRITE_DATA if data_region else CMD_WRITE_CODE
            error = FlashFailed
        else:
            command = CMD_VERIFY
            error = VerifyFailed
        mode = 'Writing' if write else 'Verifying'
        logger.debug('%s %d bytes of %s flash (file %d bytes)', mode, length, region.value, file_length)

        with open(file_name, 'rb') as input_file:
            self.fill.restart()
            for offset, size in chunks(length):
                if progress:
                    progress(offset, length)
                read_size = max(0, min(size, file_length - offset))
                data = input_file.read(read_size) if read_size else b''
                if len(data) != read_size:
                    raise UnexpectedEndOfFile(offset, read_size, len(data))
                if read_size != size:
                    if fullfill:
                        data += self.fill.fill(size - read_size)
                    else:
                        data += b'\xff' * (size - read_size)
                # verify of the data flash addresses it at its physical location
                address = offset + DATA_FLASH_ADDR if data_region and not write else offset
                request = build_write_request(command, address, data, self.session.chip_id)
                reply = self.session.command(request, STATUS_REPLY_LEN)
                if reply[STATUS_OFFSET] != 0x00:
                    logger.error('%s failed at address 0x%04x', mode, offset)
                    raise error(reply[STATUS_OFFSET], offset)
                if progress:
                    progress(offset + size, length)
        logger.info('%s success', 'Writing' if write else 'Verify')


# ---------------------------------------------------------------------------------


class ProgressBar:
    def __init__(self, bar_len=40, stream=sys.stdout):
        self.bar_len = bar_len
        self.stream = stream
        self.drawn = False

    def __call__(self, done, total):
        percent = done / total if total else 1.0
        print("\r[{:<{}}] {:.0f}% ".format("=" * int(self.bar_len * percent), self.bar_len, percent * 100),
              end="", file=self.stream, flush=True)
        self.drawn = True

    def finish(self):
        if self.drawn:
            print(file=self.stream)
            self.drawn = False


def set_logger(logfile):
    """Console messages plus, optionally, a transaction log of every usb tx and rx packet."""
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    handlers = [console]
    if logfile:
        print("Transaction logger ON: " + logfile)
        with open(logfile, 'w') as log_file:
            print(txt_sep, file=log_file)
            print(strftime("%a, %d %b %Y %X %z", localtime()), file=log_file)
            print(txt_sep, file=log_file)
        handler = logging.FileHandler(logfile, mode='a')
        handler.setLevel(logging.DEBUG)
        handlers.append(handler)
    logging.basicConfig(level=logging.DEBUG, format='%(message)s', handlers=handlers, force=True)


def error_message(errormsg):
    print(txt_sep)
    print('Error: ' + errormsg)
    print(txt_sep)


def build_parser():
    parser = argparse.ArgumentParser(description="CH559 USB bootloader flash tool.",
                                     epilog=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--version', action='version', version='%(prog)s ' + __version__)
    parser.add_argument('-e', '--erase', action='store_true', help="Erase program area")
    parser.add_argument('-w', '--write-program', metavar='FILE', help="Write a specified file to program area")
    parser.add_argument('-c', '--compare-program', metavar='FILE',
                        help="Compare program area with a specified file")
    parser.add_argument('-E', '--erase-data', action='store_true', help="Erase data area")
    parser.add_argument('-R', '--read-data', metavar='FILE', help="Read data area to a specified file")
    parser.add_argument('-W', '--write-data', metavar='FILE', help="Write a specified file to data area")
    parser.add_argument('-C', '--compare-data', metavar='FILE', help="Compare data area with a specified file")
    parser.add_argument('-f', '--fullfill', action='store_true', help="Fullfill unused area with randomized values")
    parser.add_argument('-s', '--seed', type=int, default=None, help="Random seed")
    parser.add_argument('-p', '--port', type=str, default='', help='serial port (UART bootloader instead of usb)')
    parser.add_argument('--log', type=str, default=None, help="Log usb operations to file.")
    return parser


def plan(args, flasher, bar):
    steps = []
    if args.erase or args.write_program:
        steps.append(('erase', flasher.erase))
    if args.write_program:
        steps.append(('write', lambda: flasher.write(args.write_program, Region.CODE, args.fullfill, bar)))
    if args.compare_program:
        steps.append(('compare', lambda: flasher.verify(args.compare_program, Region.CODE, args.fullfill, bar)))
    if args.erase_data or args.write_data:
        steps.append(('erase_data', flasher.erase_data))
    if args.read_data:
        steps.append(('read_data', lambda: flasher.read_data(args.read_data, bar)))
    if args.write_data:
        steps.append(('write_data', lambda: flasher.write(args.write_data, Region.DATA, args.fullfill, bar)))
    if args.compare_data:
        steps.append(('compare_data', lambda: flasher.verify(args.compare_data, Region.DATA, args.fullfill, bar)))
    return steps


def main(argv=None):
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        parser.print_help(sys.stderr)
        return 1
    args = parser.parse_args(argv)
    set_logger(args.log)

    try:
        session = connect_serial(args.port) if args.port else connect()
    except (SetupError, HandshakeError) as ex:
        error_message(str(ex))
        return EXIT_USAGE

    with session:
        fill = FillGenerator(args.seed)
        if args.fullfill or args.seed is not None:
            print("random seed: {}".format(fill.seed))
        flasher = CH559Flasher(session, fill)
        bar = ProgressBar()
        for name, step in plan(args, flasher, bar):
            try:
                step()
            except (CH559Error, OSError) as ex:
                bar.finish()
                error_message('{}: {}'.format(name, ex))
                return EXIT_IOERR
            bar.finish()
            print('{}: complete'.format(name))
    return EXIT_OK


# ---------------------------------------------------------------------------------


if __name__ == "__main__":
    sys.exit(main())
