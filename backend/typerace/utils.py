import time
import uuid


def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex
