from chatrelay.services.retry import RetryPolicy


def test_delay_doubles_per_retry_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=30.0, max_retries=10)

    assert [policy.delay_for(n) for n in range(1, 8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_sub_second_base_delay():
    policy = RetryPolicy(base_delay=0.1, max_delay=30.0, max_retries=2)

    assert round(policy.delay_for(1), 6) == 0.1
    assert round(policy.delay_for(2), 6) == 0.2


def test_drop_once_retry_count_exceeds_budget():
    policy = RetryPolicy(max_retries=3)

    assert not policy.should_drop(3)
    assert policy.should_drop(4)
    assert policy.should_drop(2, max_retries=1)
