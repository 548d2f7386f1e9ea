import redis
from examcore.core.cache import check_redeem_rate, redeem_rate_key


class FakePipeline:
    def __init__(self, store):
        self.store, self.ops = store, []

    def incr(self, key, amount=1):
        self.ops.append(("incr", key, amount))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    def execute(self):
        out = []
        for op, key, arg in self.ops:
            if op == "incr":
                self.store[key] = self.store.get(key, 0) + arg
                out.append(self.store[key])
            else:
                out.append(True)
        return out


class FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self):
        return FakePipeline(self.store)


class DownRedis:
    def pipeline(self):
        raise redis.ConnectionError("down")


def test_redeem_rate_limit_window():
    client = FakeRedis()
    results = [check_redeem_rate(client, "stu-a", limit=3) for _ in range(4)]
    assert [ok for ok, _ in results] == [True, True, True, False]
    assert client.store[redeem_rate_key("stu-a")] == 4
    assert check_redeem_rate(client, "stu-b", limit=3) == (True, 1)


def test_rate_limit_fails_open():
    assert check_redeem_rate(DownRedis(), "stu-a", limit=1) == (True, 0)
