import queue
import threading
import time
from enum import Enum
from constants import *
from common import DoTaskArgs, Phase, create_logger
import rpc

logger = create_logger()


class TaskState(Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"


class SchedulingError(Exception):
    def __init__(self, phase, task_number, attempts):
        super().__init__(f"{phase} task {task_number} failed after {attempts} attempts")
        self.phase = phase
        self.task_number = task_number
        self.attempts = attempts


class Task:
    def __init__(self, phase, number, file):
        self.phase = phase
        self.number = number
        self.file = file
        self.state = TaskState.PENDING
        self.attempts = 0 # number of times this task has been dispatched

    def __repr__(self):
        return f"Task({self.phase}, {self.number}, {self.state.value})"


class WorkerRegistry:
    """Live stream of worker addresses.

    Every registered worker is offered once; acquire() hands an offered worker
    to exactly one caller and blocks while none is available, release() offers
    a worker again once it is idle.
    """

    def __init__(self, addrs=()):
        self.lock = threading.Lock()
        self.registered = [] # every worker that ever registered, in order
        self.available = queue.Queue() # workers that are idle right now
        for addr in addrs:
            self.register(addr)

    def register(self, addr):
        with self.lock:
            self.registered.append(addr)
        logger.info("Registered worker at %s", addr)
        self.available.put(addr)

    def acquire(self, timeout=None):
        return self.available.get(timeout=timeout)

    def release(self, addr):
        self.available.put(addr)

    def workers(self):
        with self.lock:
            return list(self.registered)


class RetryPolicy:
    def __init__(self, max_attempts=MAX_TASK_ATTEMPTS, backoff=RETRY_BACKOFF, max_backoff=RETRY_MAX_BACKOFF):
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 or None, got {max_attempts}")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff

    def exhausted(self, attempts):
        return self.max_attempts is not None and attempts >= self.max_attempts

    def delay(self, attempts): # seconds to wait before retrying a task that has failed attempts times
        if self.backoff <= 0:
            return 0.0
        return min(self.backoff * 2 ** (attempts - 1), self.max_backoff)


class _PhaseBarrier:
    # counts outstanding completions, waking the dispatch loop when all tasks are done or one gave up
    def __init__(self, ntasks, pending):
        self.lock = threading.Lock()
        self.remaining = ntasks
        self.pending = pending
        self.error = None

    def complete(self):
        with self.lock:
            self.remaining -= 1
            done = self.remaining == 0
        if done:
            self.pending.put(None)

    def abort(self, error):
        with self.lock:
            if self.error is None:
                self.error = error
        self.pending.put(None)


def schedule(job_name, phase, files, n_other, registry, call=rpc.call, retry=None, func_src=""):
    """Run every task of one phase on the registry's workers.

    files holds one input descriptor per task: the input file of each map task,
    or an empty string per reduce task. n_other is the number of tasks of the
    other phase. Returns once every task has completed exactly once; a failed
    dispatch is retried on whichever worker becomes available next.
    """
    if not isinstance(phase, Phase):
        raise ValueError(f"unknown phase {phase!r}")
    if n_other < 0:
        raise ValueError(f"n_other must be >= 0, got {n_other}")
    if phase == Phase.MAP and files and n_other < 1:
        raise ValueError("map tasks need at least one reduce task to partition into")
    for i, file in enumerate(files):
        if phase == Phase.MAP and not file:
            raise ValueError(f"map task {i} has no input file")
        if phase == Phase.REDUCE and file:
            raise ValueError(f"reduce task {i} must not have an input file, got {file!r}")
    retry = retry or RetryPolicy()

    ntasks = len(files)
    logger.info("Schedule: %d %s tasks (%d I/Os)", ntasks, phase, n_other)
    if ntasks == 0:
        logger.info("Schedule: %s done", phase)
        return

    pending = queue.Queue()
    for i, file in enumerate(files):
        pending.put(Task(phase, i, file))
    barrier = _PhaseBarrier(ntasks, pending)

    def dispatch(task, srv):
        args = DoTaskArgs(job_name, task.file, phase, task.number, n_other, func_src)
        try:
            ok = call(srv, DO_TASK, args)
        except Exception: # a broken call counts as a failed attempt
            logger.exception("Schedule: call for %s task %d raised", phase, task.number)
            ok = False
        finally:
            registry.release(srv)
        if ok:
            task.state = TaskState.COMPLETED
            logger.info("Schedule: %s task %d completed on %s", phase, task.number, srv)
            barrier.complete()
            return
        logger.warning("Schedule: %s task %d failed on %s (attempt %d)", phase, task.number, srv, task.attempts)
        if retry.exhausted(task.attempts):
            barrier.abort(SchedulingError(phase, task.number, task.attempts))
            return
        time.sleep(retry.delay(task.attempts))
        task.state = TaskState.PENDING
        pending.put(task)

    while True:
        task = pending.get()
        if task is None: # all tasks completed, or one gave up
            break
        srv = registry.acquire() # blocks until a worker is idle
        task.state = TaskState.DISPATCHED
        task.attempts += 1
        threading.Thread(target=dispatch, args=(task, srv), daemon=True,
                         name=f"{phase}-{task.number}").start()

    if barrier.error is not None:
        raise barrier.error
    logger.info("Schedule: %s done", phase)


def schedule_job(job, phase, registry, call=rpc.call, retry=None, func_src=""):
    # schedule one phase of the job described by a JobContext
    if phase == Phase.MAP:
        return schedule(job.name, phase, list(job.files), job.n_reduce, registry, call, retry, func_src)
    return schedule(job.name, phase, [""] * job.n_reduce, job.n_map, registry, call, retry, func_src)
