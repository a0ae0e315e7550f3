import pickle
import socket
import struct
from constants import *
from common import create_logger

logger = create_logger()


class ProtocolError(Exception):
    """A peer sent a message that does not decode."""


def recvall(sock, n): # receives exactly n bytes from socket, returning None if connection broken
    data = bytearray()
    while len(data) < n:
        try:
            packet = sock.recv(min(4096, n - len(data))) # call sock.recv with up to 4096 bytes at a time for efficiency
            if not packet:
                return None
        except ConnectionResetError:
            return None
        data.extend(packet)
    return bytes(data)


def pack_n_args(opcode, reg_args, pickled=None):
    to_send = struct.pack('>Q', opcode)
    for arg in reg_args:
        encoded = arg.encode("utf-8")
        to_send += struct.pack('>Q', len(encoded)) + encoded
    if pickled is not None:
        to_send += struct.pack('>Q', len(pickled)) + pickled
    return to_send


def recv_opcode(sock):
    raw_opcode = recvall(sock, 8)
    if raw_opcode is None:
        return None
    return struct.unpack('>Q', raw_opcode)[0]


def recv_n_args(sock, n, pickled=False):
    args = []
    for _ in range(n):
        arg_len = _recv_len(sock)
        try:
            args.append(_recv_exact(sock, arg_len).decode("utf-8", "strict"))
        except UnicodeDecodeError as e:
            raise ProtocolError(f"argument is not UTF-8: {e}") from e
    if pickled:
        pickle_len = _recv_len(sock)
        raw = _recv_exact(sock, pickle_len)
        try:
            args.append(pickle.loads(raw))
        except Exception as e: # unpickling garbage can raise almost anything
            raise ProtocolError(f"payload does not unpickle: {e!r}") from e
    return args


def _recv_len(sock):
    return struct.unpack('>Q', _recv_exact(sock, 8))[0]


def _recv_exact(sock, n):
    data = recvall(sock, n)
    if data is None:
        raise ConnectionError("connection closed mid-message")
    return data


def call(srv, rpcname, args, timeout=RPC_TIMEOUT):
    """Call rpcname on the worker at srv and wait for its reply.

    Returns True if the worker replied RPC_OK and False if it replied
    RPC_FAILED, could not be reached, or did not answer within timeout.
    """
    try:
        with socket.create_connection(srv, timeout=timeout) as sock:
            sock.sendall(pack_n_args(RPC_CALL, [rpcname], pickle.dumps(args)))
            reply = recv_opcode(sock)
    except OSError as e: # covers refused connections and socket.timeout
        logger.warning("call %s to %s failed: %s", rpcname, srv, e)
        return False
    if reply == RPC_OK:
        return True
    if reply is None:
        logger.warning("call %s to %s failed: connection closed without reply", rpcname, srv)
    else:
        logger.warning("call %s to %s failed: worker replied %d", rpcname, srv, reply)
    return False


def register(master_addr, worker_addr, timeout=RPC_TIMEOUT):
    # tell the master a worker is listening at worker_addr, returning whether it acknowledged
    host, port = worker_addr
    with socket.create_connection(master_addr, timeout=timeout) as sock:
        sock.sendall(pack_n_args(REGISTER, [host]) + struct.pack('>Q', port))
        return recv_opcode(sock) == REGISTER_OK
