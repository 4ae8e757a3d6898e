# constants.py


# Seconds between two ticks of a viewer's timer
TICK_SECONDS = 1

# Minutes between safety-net flushes of unflushed session time
FLUSH_INTERVAL_MINUTES = 15

# Seconds between live-status polls (backs up missed webhooks)
POLL_INTERVAL_SECONDS = 120

# Helix accepts at most this many ids per /streams or /users call
HELIX_BATCH_SIZE = 100

HTTP_TIMEOUT_SECONDS = 10

# Seconds a request waits for the startup channel load before giving up
READY_TIMEOUT_SECONDS = 5

ROLLOVER_TZ = 'US/Eastern'

# APScheduler CronTrigger kwargs, evaluated in ROLLOVER_TZ
CRON_DAILY   = {'hour': 0, 'minute': 0}
CRON_WEEKLY  = {'day_of_week': 'mon', 'hour': 0, 'minute': 5}
CRON_MONTHLY = {'day': 1, 'hour': 0, 'minute': 10}

SESSION_PERIOD = 'session'
PERIODS = ('week', 'month', 'year', 'all_time')

BROADCASTER_ROLE = 'broadcaster'

# Twitch EventSub topics that drive the session lifecycle
STREAM_ONLINE  = 'stream.online'
STREAM_OFFLINE = 'stream.offline'
LIVE_TOPICS = (STREAM_ONLINE, STREAM_OFFLINE)

# Max allowed age of an EventSub delivery (Twitch recommendation)
EVENTSUB_MAX_AGE_SECONDS = 600

# Message ids kept for EventSub deduplication
EVENTSUB_SEEN_LIMIT = 2000

