MAX_UPLOAD_BYTES = 50 * 1024 * 1024    # 50 MB audio
MAX_RUBRIC_FILE_BYTES = 10 * 1024 * 1024
MAX_REQUEST_BYTES = 60 * 1024 * 1024   # audio + form fields
MIN_AUDIO_BYTES = 8 * 1024             # below this the recording is treated as silent
CHUNK_SIZE = 1024 * 1024
MAX_ERROR_CHARS = 1200
RUN_AUDIO_URL_TTL_SECONDS = 3600
AUDIO_URL_TTL_SECONDS = 1800
UPLOAD_URL_TTL_MINUTES = 15
DAYPASS_HOURS = 24
UNSET = object()
