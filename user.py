import argparse
import time
from master import MRJob
from constants import *


# Example MapReduce job counting the words in a set of text files
class MRWordCount(MRJob):
    def mapper(self, file, contents):
        for word in re.findall(r"[A-Za-z]+", contents):
            yield word, "1"

    def reducer(self, key, values):
        return str(sum(int(v) for v in values))


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Count words in text files with MapReduce.")
    parser.add_argument("files", nargs="+")
    parser.add_argument("--job-name", default="wcseq")
    parser.add_argument("--reduce", type=int, default=3, help="number of reduce tasks")
    parser.add_argument("--work-dir", default=".")
    parser.add_argument("--sequential", action="store_true", help="run in this process instead of on workers")
    parser.add_argument("--port", type=int, default=MASTER_PORT)
    opts = parser.parse_args()

    starttime = time.time()
    job = MRWordCount(opts.job_name, opts.files, opts.reduce, opts.work_dir, port=opts.port)
    result = job.run_sequential() if opts.sequential else job.run()
    job.clean_files()
    print(f"User's MapReduce job completed, result in {result}")
    print(f"Took {time.time() - starttime} seconds to finish!")
