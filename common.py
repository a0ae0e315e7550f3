import json
import logging
import os
import sys
import uuid
from collections import namedtuple
from contextlib import contextmanager
from enum import Enum
from constants import FILE_PREFIX, LOG_FILE


logger = None
def create_logger(log_file=LOG_FILE):
    global logger
    if logger is None:
        logger = logging.getLogger("mapreduce")
        logger.setLevel(logging.INFO)
        fmt = '%(threadName)s : %(asctime)s - %(name)s - %(levelname)s - %(message)s'
        formatter = logging.Formatter(fmt)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(formatter)
        logger.addHandler(sh)
        if log_file:
            fh = logging.FileHandler(log_file, mode='a')
            fh.setFormatter(formatter)
            logger.addHandler(fh)
    return logger
create_logger()


class Phase(Enum):
    MAP = "mapPhase"
    REDUCE = "reducePhase"

    def __str__(self):
        return self.value


KeyValue = namedtuple("KeyValue", ["key", "value"])


class IntermediateDataError(Exception):
    """An intermediate or output file is missing, unreadable or corrupted."""


# Argument record of the Worker.DoTask call
class DoTaskArgs:
    def __init__(self, job_name, file, phase, task_number, num_other_phase, func_src=""):
        self.job_name = job_name
        self.file = file # input file, only meaningful for map tasks
        self.phase = phase
        self.task_number = task_number # index of this task within its phase
        self.num_other_phase = num_other_phase # number of reduce tasks for map, number of map tasks for reduce
        self.func_src = func_src # source of the user map or reduce function, empty to use the worker's own

    def __eq__(self, other):
        return isinstance(other, DoTaskArgs) and vars(self) == vars(other)

    def __repr__(self):
        return f"DoTaskArgs({self.job_name!r}, {self.file!r}, {self.phase}, {self.task_number}, {self.num_other_phase})"


class JobContext:
    """Everything a phase needs to know about its job.

    The context is passed explicitly to the scheduler and to the merger; the
    job name only namespaces file names.
    """

    def __init__(self, name, files, n_reduce, work_dir="."):
        if n_reduce < 0:
            raise ValueError(f"n_reduce must be >= 0, got {n_reduce}")
        if files and n_reduce < 1:
            raise ValueError("a job with map input files needs at least one reduce task")
        self.name = name
        self.files = tuple(files)
        self.n_reduce = n_reduce
        self.work_dir = work_dir

    @property
    def n_map(self):
        return len(self.files)

    def path(self, name):
        return os.path.join(self.work_dir, name)

    def reduce_path(self, map_task, reduce_task):
        return self.path(reduce_name(self.name, map_task, reduce_task))

    def merge_path(self, reduce_task):
        return self.path(merge_name(self.name, reduce_task))

    def result_path(self):
        return self.path(FILE_PREFIX + self.name)


def reduce_name(job_name, map_task, reduce_task):
    # name of the intermediate file map task map_task writes for reduce task reduce_task
    return f"{FILE_PREFIX}{job_name}-{map_task}-{reduce_task}"


def merge_name(job_name, reduce_task):
    # name of the output file of reduce task reduce_task
    return f"{FILE_PREFIX}{job_name}-res-{reduce_task}"


def ihash(key):
    # 32-bit FNV-1a, stable across processes unlike hash()
    h = 0x811c9dc5
    for b in key.encode("utf-8"):
        h ^= b
        h = (h * 0x01000193) & 0xffffffff
    return h & 0x7fffffff


def write_kvs(f, kvs):
    # one JSON object per line, so a reader needs no count or length prefix
    count = 0
    for kv in kvs:
        f.write(json.dumps({"Key": kv.key, "Value": kv.value}) + "\n")
        count += 1
    return count


def read_kvs(path):
    """Yield every KeyValue stored in path.

    Raises IntermediateDataError if the file cannot be opened or any record
    fails to decode.
    """
    try:
        f = open(path, encoding="utf-8")
    except OSError as e:
        raise IntermediateDataError(f"cannot open {path}: {e}") from e
    with f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                key, value = record["Key"], record["Value"]
            except (ValueError, KeyError, TypeError) as e:
                raise IntermediateDataError(f"{path}:{lineno}: cannot decode record: {e}") from e
            if not isinstance(key, str) or not isinstance(value, str):
                raise IntermediateDataError(f"{path}:{lineno}: key and value must be strings")
            yield KeyValue(key, value)


@contextmanager
def atomic_write(path):
    # write through a uniquely named file beside path, renamed onto path only if the block succeeds
    tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
    f = open(tmp_path, "x", encoding="utf-8") # plain open, so the file gets the umask mode
    try:
        with f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise
