REDIS_MESSAGES_KEY = "room:messages:{slug}" # room code - list of JSON encoded chat messages

# **Example `room:messages:{code}` entry**
# - `id` = message id (hex uuid)
# - `roomId` = `{code}`
# - `text` = message body
# - `userId` = hub-assigned participant id of the author
# - `senderName` = display name at send time
# - `timestamp` = ISO timestamp (UTC)
