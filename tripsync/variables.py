'''
Define trip detection thresholds used across the entire application
'''


MIN_SPEED = 1.0                # m/s: at or above this a sample counts as moving
MAX_STOP_DURATION = 300        # seconds stationary (or silent) before a trip is closed
MIN_TRIP_DISTANCE = 200        # meters: shorter candidates are discarded
MIN_TRIP_DURATION = 60         # seconds: shorter candidates are discarded
MAX_STATIONARY_DISTANCE = 10   # meters: below this, nominal speed is treated as GPS jitter
STATIONARY_TIME_DELTA = 5      # seconds: jitter check only applies to gaps longer than this

MS_TO_KMH = 3.6
