import threading


class Singleton(type):
    _instances = {}
    # reentrant: one singleton may build another in its __init__ (LogFlex reads ReadConfig)
    _lock = threading.RLock()

    def __call__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__call__(*args, **kwargs)
        return cls._instances[cls]
