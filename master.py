import os
import socket
import struct
import textwrap
import threading
from dill.source import getsource
from constants import *
from common import JobContext, Phase, create_logger, read_kvs
from mapper import do_map
from merger import do_reduce
from scheduler import WorkerRegistry, schedule_job
import rpc

logger = create_logger()


# MapReduce Job class, i.e., the master node class
class MRJob:
    def __init__(self, job_name, files, n_reduce, work_dir=".", host=MASTER_HOST, port=MASTER_PORT,
                 retry=None, ship_source=True):
        self.job = JobContext(job_name, files, n_reduce, work_dir)
        self.registry = WorkerRegistry() # workers that registered with this master
        self.retry = retry # RetryPolicy for both phases, None for the defaults in constants
        self.ship_source = ship_source # send mapper/reducer source with every task instead of relying on the workers' own
        self.host, self.port = host, port
        self.lsock = None
        self.listening = False

    def mapper(self, file, contents): # map function, overwritten by user
        return []

    def reducer(self, key, values): # reduce function, overwritten by user
        return ""

    # Run the whole job in this process, without workers
    def run_sequential(self):
        job = self.job
        for m, file in enumerate(job.files):
            do_map(job.name, m, file, job.n_reduce, self.mapper, job.work_dir)
        for r in range(job.n_reduce):
            result = do_reduce(job.name, r, job.merge_path(r), job.n_map, self.reducer, job.work_dir)
            if not result.ok:
                raise result.error
        return self.merge()

    # Run the job on registered workers: map phase, then reduce phase, then merge the reduce outputs
    def run(self):
        if not self.listening:
            self.start()
        try:
            schedule_job(self.job, Phase.MAP, self.registry, retry=self.retry, func_src=self.source("mapper"))
            schedule_job(self.job, Phase.REDUCE, self.registry, retry=self.retry, func_src=self.source("reducer"))
            return self.merge()
        finally:
            self.kill_workers()
            self.stop()

    def source(self, name):
        if not self.ship_source:
            return ""
        return textwrap.dedent(getsource(getattr(self, name)))

    # Start listening for worker registrations in the background
    def start(self):
        self.lsock = socket.socket(socket.AF_INET, socket.SOCK_STREAM) # listening socket, through which workers register
        self.lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.lsock.bind((self.host, self.port))
        self.lsock.listen()
        self.lsock.settimeout(0.5) # so the accept loop notices stop()
        self.host, self.port = self.lsock.getsockname()
        self.listening = True
        logger.info("Master node listening at %s", (self.host, self.port))
        threading.Thread(target=self.accept_worker_connections, daemon=True, name="registration").start()

    def stop(self):
        self.listening = False
        if self.lsock is not None:
            self.lsock.close()
            self.lsock = None

    def accept_worker_connections(self):
        lsock = self.lsock
        while self.listening:
            try:
                conn, _ = lsock.accept()
            except socket.timeout:
                continue
            except OSError: # listening socket closed by stop()
                return
            conn.settimeout(RPC_TIMEOUT)
            try:
                self.service_worker_registration(conn)
            except (OSError, rpc.ProtocolError) as e: # a bad registration must not stop the listener
                logger.warning("Master node dropped a registration: %s", e)

    # Accept one worker registration, adding the worker's listening address to the registry
    def service_worker_registration(self, conn):
        with conn:
            opcode = rpc.recv_opcode(conn)
            if opcode != REGISTER:
                logger.warning("Master node received invalid opcode %s during registration", opcode)
                return
            host = rpc.recv_n_args(conn, 1)[0]
            raw_port = rpc.recvall(conn, 8)
            if raw_port is None:
                logger.warning("Master node lost worker at %s mid-registration", host)
                return
            self.registry.register((host, struct.unpack('>Q', raw_port)[0]))
            conn.sendall(struct.pack('>Q', REGISTER_OK))

    # Tell every registered worker to exit, returning how many acknowledged
    def kill_workers(self):
        n = 0
        for addr in self.registry.workers():
            if rpc.call(addr, SHUTDOWN, None, timeout=1.0):
                n += 1
        return n

    # Combine the output of every reduce task into a single "key: value" file sorted by key
    def merge(self):
        job = self.job
        kvs = {}
        for r in range(job.n_reduce):
            for kv in read_kvs(job.merge_path(r)):
                kvs[kv.key] = kv.value
        with open(job.result_path(), "w", encoding="utf-8") as f:
            for key in sorted(kvs):
                f.write(f"{key}: {kvs[key]}\n")
        logger.info("Merged %d reduce outputs into %s", job.n_reduce, job.result_path())
        return job.result_path()

    # Remove the intermediate and per-reduce output files of this job
    def clean_files(self):
        job = self.job
        paths = [job.reduce_path(m, r) for m in range(job.n_map) for r in range(job.n_reduce)]
        paths += [job.merge_path(r) for r in range(job.n_reduce)]
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
