REDIS_REGISTRATION_KEY = "stream:registration:{room_code}" # room code - registered host address

# **Example `stream:registration:{code}` hash fields**
# - `ip` = public IP or tunnel hostname of the host
# - `port` = port string as submitted by the host
# - `registered_at` = ISO timestamp
# TTL mirrors ROOM_TTL_SECONDS; a host re-registering refreshes it.
