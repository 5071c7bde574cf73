"""
Redis Lua scripts for atomic cache operations.
"""

# Delete a key only if it still holds the expected value (lock release)
COMPARE_AND_DELETE_SCRIPT = """
local key = KEYS[1]
local expected = ARGV[1]

if redis.call('GET', key) == expected then
    return redis.call('DEL', key)
end

return 0
"""
