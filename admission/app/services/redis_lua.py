"""Redis Lua scripts for the distributed window store.

Scripts run atomically on the Redis server, so concurrent instances cannot
interleave between counting a window and recording a request in it.
"""

# Sliding window over a sorted set of request timestamps (milliseconds).
# Only admitted requests are recorded, so a denied caller is readmitted as soon
# as the oldest admitted request leaves the window.
# Returns {position of this request in the window, oldest_score + window}.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Drop requests that have left the window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local count = redis.call('ZCARD', key)
    if count < limit then
        redis.call('ZADD', key, now, member)
    end
    redis.call('PEXPIRE', key, window)

    local reset_at = now + window
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    if oldest[2] then
        reset_at = tonumber(oldest[2]) + window
    end

    return {count + 1, reset_at}
"""
