import os
from itertools import groupby
from operator import attrgetter
from common import IntermediateDataError, KeyValue, atomic_write, create_logger, read_kvs, reduce_name, write_kvs

logger = create_logger()


class ReduceResult:
    """Outcome of one reduce task: either ok with a record count, or the error that stopped it."""

    def __init__(self, out_file, records=0, error=None):
        self.out_file = out_file
        self.records = records
        self.error = error

    @property
    def ok(self):
        return self.error is None

    def __bool__(self):
        return self.ok

    def __repr__(self):
        if self.ok:
            return f"ReduceResult({self.out_file!r}, records={self.records})"
        return f"ReduceResult({self.out_file!r}, error={self.error!r})"


def do_reduce(job_name, reduce_task, out_file, n_map, reduce_f, work_dir="."):
    """Reduce the partitions every map task wrote for reduce_task into out_file.

    Records are sorted by key with a stable sort, so values reach reduce_f in
    map task order and, within one map task, in file order. Nothing is written
    to out_file unless every input decodes and reduce_f succeeds for every key;
    any failure comes back as the error of the returned ReduceResult.
    """
    kvs = []
    for m in range(n_map):
        path = os.path.join(work_dir, reduce_name(job_name, m, reduce_task))
        try:
            kvs.extend(read_kvs(path))
        except (IntermediateDataError, OSError, ValueError) as e:
            error = e if isinstance(e, IntermediateDataError) else IntermediateDataError(f"{path}: {e}")
            logger.error("Reduce %s/%d: %s", job_name, reduce_task, error)
            return ReduceResult(out_file, error=error)

    kvs.sort(key=attrgetter("key"))

    try:
        with atomic_write(out_file) as f:
            records = write_kvs(f, (
                KeyValue(key, str(reduce_f(key, [kv.value for kv in group])))
                for key, group in groupby(kvs, key=attrgetter("key"))
            ))
    except Exception as e: # reduce_f raised or the output could not be written
        logger.error("Reduce %s/%d: %r", job_name, reduce_task, e)
        return ReduceResult(out_file, error=e)

    logger.info("Reduce %s/%d: %d records from %d map tasks written to %s", job_name, reduce_task, records, n_map, out_file)
    return ReduceResult(out_file, records=records)
