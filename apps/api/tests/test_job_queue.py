import re
from unittest.mock import MagicMock, patch

from redis import Redis
from rq.job import Job

from services.job_queue import ADDRESS_JOB_FUNCTION, address_job_id, enqueue_address_resolution_job

ADDRESS_URI = "at://did:plc:venues/community.lexicon.location.address/cafe"


def test_address_job_id_is_accepted_by_rq():
    rkey = "3k2abc:self.v1~x"
    job_id = address_job_id(rkey)

    job = Job.create(
        ADDRESS_JOB_FUNCTION,
        args=(rkey, ADDRESS_URI, None),
        id=job_id,
        connection=Redis(),
    )

    assert job.id == job_id
    assert re.fullmatch(r"[A-Za-z0-9_-]+", job_id)


def test_address_job_id_is_stable_per_checkin():
    assert address_job_id("3k2abc") == address_job_id("3k2abc")
    assert address_job_id("3k2abc") != address_job_id("3k2abd")


def test_enqueue_passes_rq_safe_job_id_and_retry_policy():
    queue = MagicMock()
    with patch("services.job_queue.get_address_queue", return_value=queue):
        enqueue_address_resolution_job("3k2abc:x", ADDRESS_URI, "bafyaddress")

    args, kwargs = queue.enqueue.call_args
    assert args == (ADDRESS_JOB_FUNCTION, "3k2abc:x", ADDRESS_URI, "bafyaddress")
    assert kwargs["job_id"] == address_job_id("3k2abc:x")
    assert kwargs["retry"].max == 3
