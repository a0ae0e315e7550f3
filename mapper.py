import os
from common import KeyValue, atomic_write, create_logger, ihash, reduce_name, write_kvs

logger = create_logger()


def do_map(job_name, map_task, in_file, n_reduce, map_f, work_dir="."):
    # run map_f over in_file and write one partition file per reduce task, empty partitions included
    if n_reduce < 1:
        raise ValueError(f"map task {map_task} needs at least one reduce task, got {n_reduce}")
    with open(in_file, encoding="utf-8") as f:
        contents = f.read()

    partitions = [[] for _ in range(n_reduce)] # reduce task number -> key/value pairs for it
    for kv in map_f(in_file, contents):
        key, value = str(kv[0]), str(kv[1])
        partitions[ihash(key) % n_reduce].append(KeyValue(key, value))

    for r, kvs in enumerate(partitions):
        with atomic_write(os.path.join(work_dir, reduce_name(job_name, map_task, r))) as f:
            write_kvs(f, kvs)
    logger.info("Map %s/%d: %s split into %d partitions", job_name, map_task, in_file, n_reduce)
