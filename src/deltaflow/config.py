import os
import torch
import logging

# the engine computes every gradient itself, torch autograd is never needed
torch.autograd.set_grad_enabled(False)

_log_file = os.environ.get("DEFLOW_LOG_FILE")
logging.basicConfig(
    filename=_log_file,
    level=getattr(logging, os.environ.get("DEFLOW_LOG_LEVEL", "WARNING").upper(), logging.WARNING),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
    )

# datatype of every buffer and parameter
dtype = torch.float64
# single process cpu execution
device = torch.device("cpu")

# poison recycled buffers and raise on use after release / double release
CHECK_REFERENCES = os.environ.get("DEFLOW_CHECK_REFERENCES", "1") != "0"
# maximum number of idle buffers kept per element count
POOL_BUCKET_LIMIT = int(os.environ.get("DEFLOW_POOL_BUCKET_LIMIT", "16"))
# threads used to evaluate batches of a trainable
NUM_WORKERS = int(os.environ.get("DEFLOW_NUM_WORKERS", str(min(4, os.cpu_count() or 1))))

logging.getLogger(__name__).debug(
    "deltaflow config: dtype=%s device=%s check_references=%s workers=%d",
    dtype, device, CHECK_REFERENCES, NUM_WORKERS)
