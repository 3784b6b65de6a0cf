import pytest

from ch559errors import TransportReadFailed
from ch559fill import FillGenerator
from ch559flasher import CH559Flasher
from ch559session import Session

FLASH_SIZE = 0xf400
DATA_FLASH_ADDR = 0xf000


class FakeBootloader:
    """In-memory CH559 bootloader speaking the bulk command set.

    Code and data flash share one physical address space: the data flash
    starts at 0xf000, data writes and reads use offsets from there.
    """

    def __init__(self, chip_id=0x59, version=(2, 4, 0), seed_bytes=(0x80, 0x90, 0x10, 0x20)):
        self.chip_id = chip_id
        self.detect_code = chip_id
        self.version = version
        self.seed_bytes = seed_bytes
        self.key_status = None
        self.flash = bytearray(b'\xff' * FLASH_SIZE)
        self.requests = []
        self.fail_status = {}
        self.closed = False
        self.broken = set()

    def opcodes(self):
        return [r[0] for r in self.requests]

    def commands(self, opcode):
        return [r for r in self.requests if r[0] == opcode]

    def close(self):
        self.closed = True

    def exchange(self, request, response_len):
        request = bytes(request)
        self.requests.append(request)
        op = request[0]
        if op in self.broken:
            raise TransportReadFailed(detail='timeout')
        reply = bytearray(max(response_len, 6))
        reply[0] = op
        if op == 0xa1:
            reply[4] = self.detect_code
        elif op == 0xa7:
            reply[19:22] = bytes(self.version)
            reply[22:26] = bytes(self.seed_bytes)
        elif op == 0xa3:
            reply[4] = self.chip_id if self.key_status is None else self.key_status
        elif op == 0xa4:
            self.flash[:request[3] * 1024] = b'\xff' * (request[3] * 1024)
        elif op == 0xa9:
            self.flash[DATA_FLASH_ADDR:] = b'\xff' * (FLASH_SIZE - DATA_FLASH_ADDR)
        elif op == 0xab:
            offset = request[3] | (request[4] << 8)
            size = request[7]
            reply[6:6 + size] = self.flash[DATA_FLASH_ADDR + offset:DATA_FLASH_ADDR + offset + size]
        elif op in (0xa5, 0xa6, 0xaa):
            address = request[3] | (request[4] << 8)
            length = request[7]
            assert request[1] == length + 5
            assert len(request) == 8 + length
            payload = bytearray(request[8:])
            for x in range(7, length, 8):
                payload[x] ^= self.chip_id
            if op == 0xaa:
                address += DATA_FLASH_ADDR
            if address + length > FLASH_SIZE:
                reply[4] = 0xfe
            elif op == 0xa6:
                reply[4] = 0x00 if self.flash[address:address + length] == payload else 0x01
            else:
                self.flash[address:address + length] = payload
        reply[4] = self.fail_status.get(op, reply[4])
        return bytes(reply[:response_len])


@pytest.fixture
def bootloader():
    return FakeBootloader()


@pytest.fixture
def session(bootloader):
    return Session(bootloader)


@pytest.fixture
def flasher(session):
    return CH559Flasher(session, FillGenerator(1234))


@pytest.fixture
def image(tmp_path):
    def make(data, name='image.bin'):
        path = tmp_path / name
        path.write_bytes(bytes(data))
        return str(path)
    return make
