# Any imports used in map and reduce functions shipped as source MUST be imported here
import re
import string


# Opcodes for the wire protocol

# Sent from workers to master
REGISTER = 1 # worker announces itself to the master, sending its listening host and port

# Sent from master to workers
REGISTER_OK = 2 # master acknowledges a worker registration
RPC_CALL = 3 # master calls a method on a worker, sending the method name and the pickled arguments

# Sent from workers to master in reply to RPC_CALL
RPC_OK = 4 # the call succeeded
RPC_FAILED = 5 # the worker could not complete the call


# Remote method names
DO_TASK = "Worker.DoTask"
SHUTDOWN = "Worker.Shutdown"


# General constants
MASTER_HOST = "127.0.0.1" # host the master listens on for worker registrations
MASTER_PORT = 12355 # port the master listens on for worker registrations
WORKER_HOST = "127.0.0.1" # host workers listen on for calls from the master
RPC_TIMEOUT = 30.0 # seconds before a call to a worker is treated as failed

MAX_TASK_ATTEMPTS = None # dispatch attempts per task before the phase gives up, None retries forever
RETRY_BACKOFF = 0.1 # seconds to wait before the first retry of a failed task, doubled on every further retry
RETRY_MAX_BACKOFF = 2.0 # upper bound on the wait between retries

FILE_PREFIX = "mrtmp." # every file a job writes starts with this
LOG_FILE = None # optional path the logger also writes to
