REDIS_META_KEY = "room:meta:{slug}" # room id - creator, title, description
REDIS_SESSION_KEY = "room:session:{slug}" # room id - persisted playback snapshot

# **Example `room:meta:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `creator_id` = participant identity allowed to commit seeks
# - `title` = display title
# - `description` = optional
# - `created_at` = ISO timestamp

# **Example `room:session:{id}` hash fields**
# - `media_ref` = url of the current track
# - `position` = fraction 0.0-1.0 of the track duration
# - `updated_at` = ISO timestamp
