#!/usr/bin/env python3
"""
Job metrics: counters, key/value sets and set counters
Shared by every worker thread of one export task
"""

import threading
from collections import defaultdict
from typing import Dict, Set

from bridgex.enhanced_logger import logger


class Metrics:
    """Thread-safe metrics for a single export run"""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._key_values: Dict[str, Set[str]] = defaultdict(set)
        self._set_counters: Dict[str, Set[str]] = defaultdict(set)

    def increment_counter(self, name: str) -> int:
        """Increment a counter and return the new value"""
        with self._lock:
            self._counters[name] += 1
            return self._counters[name]

    def add_key_value_pair(self, key: str, value: str):
        """Record a distinct value under key (e.g. app versions per study)"""
        with self._lock:
            self._key_values[key].add(value)

    def increment_set_counter(self, name: str, value: str):
        """Count distinct values under name (e.g. unique health codes)"""
        with self._lock:
            self._set_counters[name].add(value)

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_key_values(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._key_values.get(key, ()))

    def get_set_counter(self, name: str) -> int:
        with self._lock:
            return len(self._set_counters.get(name, ()))

    def publish(self):
        """Write all metrics to the log in sorted order"""
        with self._lock:
            counters = dict(self._counters)
            key_values = {key: sorted(values) for key, values in self._key_values.items()}
            set_counters = {name: len(values) for name, values in self._set_counters.items()}

        for name in sorted(counters):
            logger.info(f"metrics.counter.{name}={counters[name]}")
        for key in sorted(key_values):
            logger.info(f"metrics.keyValues.{key}={', '.join(key_values[key])}")
        for name in sorted(set_counters):
            logger.info(f"metrics.setCounter.{name}={set_counters[name]}")
