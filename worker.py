import argparse
import functools
import os
import socket
import struct
from constants import *
from common import DoTaskArgs, Phase, create_logger, merge_name
from mapper import do_map
from merger import do_reduce
import rpc

logger = create_logger()


def load_function(src, name):
    # compile a map or reduce method shipped as source; shipped methods take self as first argument
    ldict = {}
    exec(src, globals(), ldict)
    return functools.partial(ldict[name], None)


class Worker:
    """Executes one map or reduce task at a time for the master.

    The worker listens for calls on its own port and registers that address
    with the master. After max_rpcs DoTask calls it stops serving, which looks
    to the master like a crashed worker.
    """

    def __init__(self, master_addr=(MASTER_HOST, MASTER_PORT), work_dir=".", map_f=None, reduce_f=None,
                 max_rpcs=None, host=WORKER_HOST, port=0):
        self.master_addr = master_addr
        self.work_dir = work_dir
        self.map_f, self.reduce_f = map_f, reduce_f # used when a task ships no function source
        self.max_rpcs = max_rpcs
        self.n_tasks = 0 # DoTask calls served so far
        self.running = True

        # listening socket, through which the master calls this worker
        self.lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.lsock.bind((host, port))
        self.lsock.listen()
        self.addr = self.lsock.getsockname()
        logger.info("Worker listening at %s", self.addr)

    def register(self):
        if not rpc.register(self.master_addr, self.addr):
            raise ConnectionError(f"master at {self.master_addr} refused registration of {self.addr}")

    def run(self):
        self.register()
        try:
            while self.running:
                conn, _ = self.lsock.accept()
                try:
                    self.service_master_connection(conn)
                except OSError as e: # master hung up before the reply
                    logger.warning("Worker at %s lost a call: %s", self.addr, e)
        finally:
            self.lsock.close()
            logger.info("Worker at %s exiting after %d tasks", self.addr, self.n_tasks)

    # Serve one call from the master: receive the method name and arguments, run it, reply with the outcome
    def service_master_connection(self, conn):
        with conn:
            opcode = rpc.recv_opcode(conn)
            if opcode is None: # master went away before sending anything
                return
            if opcode != RPC_CALL:
                logger.warning("Worker at %s received invalid opcode %d", self.addr, opcode)
                conn.sendall(struct.pack('>Q', RPC_FAILED))
                return
            try:
                rpcname, args = rpc.recv_n_args(conn, 1, pickled=True)
            except ConnectionError as e:
                logger.warning("Worker at %s dropped a call: %s", self.addr, e)
                return
            except rpc.ProtocolError as e:
                logger.warning("Worker at %s received a malformed call: %s", self.addr, e)
                conn.sendall(struct.pack('>Q', RPC_FAILED))
                return

            if rpcname == DO_TASK and not isinstance(args, DoTaskArgs):
                logger.warning("Worker at %s received %s with bad arguments %r", self.addr, rpcname, args)
                ok = False
            elif rpcname == DO_TASK:
                ok = self.do_task(args)
                self.n_tasks += 1
                if self.max_rpcs is not None and self.n_tasks >= self.max_rpcs:
                    self.running = False
            elif rpcname == SHUTDOWN:
                ok = True
                self.running = False
            else:
                logger.warning("Worker at %s received unknown method %s", self.addr, rpcname)
                ok = False
            conn.sendall(struct.pack('>Q', RPC_OK if ok else RPC_FAILED))

    def do_task(self, args):
        logger.info("Worker at %s starting %s task %d", self.addr, args.phase, args.task_number)
        try:
            if args.phase == Phase.MAP:
                map_f = load_function(args.func_src, "mapper") if args.func_src else self.map_f
                if map_f is None:
                    raise ValueError("no map function")
                do_map(args.job_name, args.task_number, args.file, args.num_other_phase, map_f, self.work_dir)
            else:
                reduce_f = load_function(args.func_src, "reducer") if args.func_src else self.reduce_f
                if reduce_f is None:
                    raise ValueError("no reduce function")
                out_file = os.path.join(self.work_dir, merge_name(args.job_name, args.task_number))
                result = do_reduce(args.job_name, args.task_number, out_file, args.num_other_phase, reduce_f, self.work_dir)
                if not result.ok:
                    logger.error("Worker at %s failed %s task %d: %s", self.addr, args.phase, args.task_number, result.error)
                    return False
        except Exception:
            logger.exception("Worker at %s failed %s task %d", self.addr, args.phase, args.task_number)
            return False
        logger.info("Worker at %s finished %s task %d", self.addr, args.phase, args.task_number)
        return True


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Run a MapReduce worker that registers with a master.")
    parser.add_argument("--master-host", default=MASTER_HOST)
    parser.add_argument("--master-port", type=int, default=MASTER_PORT)
    parser.add_argument("--host", default=WORKER_HOST)
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--work-dir", default=".")
    parser.add_argument("--max-rpcs", type=int, default=None)
    opts = parser.parse_args()
    Worker((opts.master_host, opts.master_port), opts.work_dir, max_rpcs=opts.max_rpcs,
           host=opts.host, port=opts.port).run()
