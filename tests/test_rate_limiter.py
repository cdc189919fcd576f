from inbox_automation.rate_limiter import RateLimiter


class FakeClock:
	def __init__(self):
		self.now = 0.0

	def __call__(self):
		return self.now

	def sleep(self, seconds):
		self.now += seconds


def test_rate_limiter_wait_time():
	clock = FakeClock()
	rl = RateLimiter(max_requests=2, time_window=2, clock=clock, sleep=clock.sleep)
	rl.add_request()
	rl.add_request()
	wt = rl.get_wait_time()
	assert 0 < wt <= 2
	# After waiting, should be zero
	clock.now += 2.1
	assert rl.get_wait_time() == 0


def test_acquire_blocks_until_a_slot_frees():
	clock = FakeClock()
	rl = RateLimiter(max_requests=2, time_window=10, clock=clock, sleep=clock.sleep)
	rl.acquire()
	clock.now = 4.0
	rl.acquire()
	rl.acquire()
	# the third call had to wait for the first request to leave the window
	assert clock.now == 10.0
	assert rl.get_wait_time() == 4.0


def test_acquire_gives_up_after_timeout():
	clock = FakeClock()
	rl = RateLimiter(max_requests=1, time_window=60, clock=clock, sleep=clock.sleep)
	assert rl.acquire(timeout=5)
	assert not rl.acquire(timeout=5)
	# no time was spent waiting on a slot that could not free up in time
	assert clock.now == 0.0
	assert rl.acquire(timeout=60)
	assert clock.now == 60.0
