REDIS_META_KEY = "room:meta:{slug}" # room id
REDIS_PEER_KEY = "peer:{peer_id}" # peer id - registration metadata, present while connected
REDIS_PEER_CHANNEL = "peer:channel:{peer_id}" # peer id - pub/sub channel frames are routed on
REDIS_SESSION_KEY = "party:session:{owner}" # owner id - persisted local session fields

# **Example `room:meta:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `host_peer_id` = `curryparty-host-{roomId}`
# - `created_at` = ISO timestamp
# - `expires_at` = ISO timestamp (TTL is authoritative)
# - `room_url` = base URL the host created the room on (optional)

# **Example `peer:{peer_id}` value** (JSON string, SET NX with TTL, refreshed on every frame)
# - `{"connected_at": ISO timestamp}`
