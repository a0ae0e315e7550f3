import unittest
import os
import stat
import tempfile
from common import IntermediateDataError, KeyValue, read_kvs, reduce_name, merge_name, write_kvs
from merger import do_reduce


def join_reduce(key, values):
    return "+".join(values)


class TestReduce(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = self.tmp.name

    def tearDown(self):
        self.tmp.cleanup()

    def write_partition(self, m, r, kvs, job="job"):
        with open(os.path.join(self.dir, reduce_name(job, m, r)), "w") as f:
            write_kvs(f, [KeyValue(k, v) for k, v in kvs])

    def out_file(self, r=0):
        return os.path.join(self.dir, merge_name("job", r))

    def test_groups_keys_across_partitions(self):
        self.write_partition(0, 0, [("a", "1"), ("b", "2")])
        self.write_partition(1, 0, [("a", "3")])
        result = do_reduce("job", 0, self.out_file(), 2, join_reduce, self.dir)
        self.assertTrue(result.ok)
        self.assertEqual(result.records, 2)
        self.assertEqual(list(read_kvs(self.out_file())), [KeyValue("a", "1+3"), KeyValue("b", "2")])

    def test_keys_strictly_ascending(self):
        self.write_partition(0, 1, [("pear", "1"), ("Apple", "1"), ("apple", "1"), ("zebra", "1")])
        self.write_partition(1, 1, [("apple", "1"), ("banana", "1"), ("pear", "1")])
        self.write_partition(2, 1, [("ápple", "1"), ("a", "1")])
        result = do_reduce("job", 1, self.out_file(1), 3, lambda k, vs: len(vs), self.dir)
        self.assertTrue(result.ok)
        kvs = list(read_kvs(self.out_file(1)))
        keys = [kv.key for kv in kvs]
        for k1, k2 in zip(keys, keys[1:]):
            self.assertLess(k1.encode("utf-8"), k2.encode("utf-8"))
        self.assertEqual(keys, ["Apple", "a", "apple", "banana", "pear", "zebra", "ápple"])
        self.assertEqual(dict(kvs)["apple"], "2")

    def test_values_keep_map_task_order(self):
        self.write_partition(0, 0, [("k", "m0-first"), ("j", "x"), ("k", "m0-second")])
        self.write_partition(1, 0, [("k", "m1")])
        seen = {}

        def record(key, values):
            seen[key] = list(values)
            return str(len(values))

        do_reduce("job", 0, self.out_file(), 2, record, self.dir)
        self.assertEqual(seen["k"], ["m0-first", "m0-second", "m1"])
        self.assertEqual(seen["j"], ["x"])

    def test_reduce_called_once_per_key(self):
        self.write_partition(0, 0, [("a", "1"), ("a", "1"), ("b", "1")])
        calls = []
        do_reduce("job", 0, self.out_file(), 1, lambda k, vs: calls.append(k) or "", self.dir)
        self.assertEqual(calls, ["a", "b"])

    def test_no_map_tasks_gives_empty_output(self):
        result = do_reduce("job", 0, self.out_file(), 0, join_reduce, self.dir)
        self.assertTrue(result.ok)
        self.assertEqual(result.records, 0)
        self.assertTrue(os.path.exists(self.out_file()))
        self.assertEqual(list(read_kvs(self.out_file())), [])

    def test_missing_partition_fails_without_output(self):
        self.write_partition(0, 0, [("a", "1")])
        result = do_reduce("job", 0, self.out_file(), 2, join_reduce, self.dir)
        self.assertFalse(result.ok)
        self.assertFalse(result)
        self.assertIsInstance(result.error, IntermediateDataError)
        self.assertFalse(os.path.exists(self.out_file()))

    def test_corrupted_partition_fails_without_output(self):
        self.write_partition(0, 0, [("a", "1")])
        with open(os.path.join(self.dir, reduce_name("job", 1, 0)), "w") as f:
            f.write('{"Key": "a", "Value": "2"}\n{"Key": "b", "Val')
        result = do_reduce("job", 0, self.out_file(), 2, join_reduce, self.dir)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, IntermediateDataError)
        self.assertFalse(os.path.exists(self.out_file()))

    def test_existing_output_untouched_on_failure(self):
        with open(self.out_file(), "w") as f:
            f.write("previous\n")
        result = do_reduce("job", 0, self.out_file(), 1, join_reduce, self.dir)
        self.assertFalse(result.ok)
        with open(self.out_file()) as f:
            self.assertEqual(f.read(), "previous\n")
        self.assertEqual(os.listdir(self.dir), [merge_name("job", 0)])

    def test_output_overwritten_and_no_temp_left(self):
        with open(self.out_file(), "w") as f:
            f.write("previous\n")
        self.write_partition(0, 0, [("a", "1")])
        do_reduce("job", 0, self.out_file(), 1, join_reduce, self.dir)
        self.assertEqual(list(read_kvs(self.out_file())), [KeyValue("a", "1")])
        self.assertEqual(sorted(os.listdir(self.dir)), sorted([merge_name("job", 0), reduce_name("job", 0, 0)]))

    def test_output_gets_the_usual_file_mode(self):
        self.write_partition(0, 0, [("a", "1")])
        do_reduce("job", 0, self.out_file(), 1, join_reduce, self.dir)
        plain = os.path.join(self.dir, "plain")
        with open(plain, "w"):
            pass
        self.assertEqual(stat.S_IMODE(os.stat(self.out_file()).st_mode), stat.S_IMODE(os.stat(plain).st_mode))

    def test_failing_reduce_function_returns_error(self):
        error = RuntimeError("boom")
        def failing_reduce(key, values):
            raise error
        self.write_partition(0, 0, [("a", "1")])
        result = do_reduce("job", 0, self.out_file(), 1, failing_reduce, self.dir)
        self.assertFalse(result.ok)
        self.assertIs(result.error, error)
        self.assertFalse(os.path.exists(self.out_file()))
        self.assertEqual(os.listdir(self.dir), [reduce_name("job", 0, 0)])


class TestNaming(unittest.TestCase):
    def test_reduce_name_is_pure(self):
        self.assertEqual(reduce_name("job", 1, 2), reduce_name("job", 1, 2))
        self.assertEqual(reduce_name("job", 1, 2), "mrtmp.job-1-2")

    def test_reduce_name_distinct_per_pair(self):
        names = {reduce_name("job", m, r) for m in range(12) for r in range(12)}
        self.assertEqual(len(names), 144)

    def test_merge_name(self):
        self.assertEqual(merge_name("job", 3), "mrtmp.job-res-3")
        self.assertNotIn(merge_name("job", 0), {reduce_name("job", m, r) for m in range(3) for r in range(3)})


class TestRecordEncoding(unittest.TestCase):
    def test_read_stops_cleanly_at_end_of_stream(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "kvs")
            with open(path, "w") as f:
                self.assertEqual(write_kvs(f, [KeyValue("a\nb", "1"), KeyValue("", "two words")]), 2)
            self.assertEqual(list(read_kvs(path)), [KeyValue("a\nb", "1"), KeyValue("", "two words")])

    def test_non_string_values_rejected(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "kvs")
            with open(path, "w") as f:
                f.write('{"Key": "a", "Value": 1}\n')
            with self.assertRaises(IntermediateDataError):
                list(read_kvs(path))


if __name__ == '__main__':
    unittest.main()
