# cache_checker.py
from datetime import date, timedelta
import logging

from .models import Doctor
from .utils import AvailabilityCache, serialize_slot


def acquire_lock(redis_client, lock_key, ttl=10):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def compare_time_slots(correct_time_slots, cached_time_slots):
    discrepancies = []
    correct_set = {tuple(sorted(slot.items())) for slot in correct_time_slots}
    cached_set = {tuple(sorted(slot.items())) for slot in cached_time_slots}

    for item in correct_set - cached_set:
        discrepancies.append(f"Missing in cache: {dict(item)}")
        logging.info(f"Missing in cache: {dict(item)}")

    for item in cached_set - correct_set:
        discrepancies.append(f"Unexpected in cache: {dict(item)}")
        logging.info(f"Unexpected in cache: {dict(item)}")

    return discrepancies


def check_and_sync_cache(store, redis_client, start_date: date = None, days: int = 7):
    """Compare cached availability with the store and overwrite stale entries.

    Only entries that exist in Redis are checked; misses are filled on demand.
    Returns the number of entries rewritten.
    """
    cache = AvailabilityCache(redis_client)
    start_date = start_date or date.today()
    rewritten = 0

    with store.transaction() as session:
        doctors = session.query(Doctor).order_by(Doctor.id).all()

        for doctor in doctors:
            for offset in range(days):
                day = start_date + timedelta(days=offset)
                cache_key = cache.key(doctor.id, day)
                lock_key = f"lock:{cache_key}"

                if not acquire_lock(redis_client, lock_key):
                    logging.info(f"Cache check skipped for {cache_key} because another process is running.")
                    continue
                try:
                    cached_time_slots = cache.get(doctor.id, day)
                    if cached_time_slots is None:
                        continue

                    generation = cache.generation(doctor.id, day)
                    correct_time_slots = [
                        serialize_slot(slot, available)
                        for slot, available in store.doctor_timeslots(session, doctor.id, day)
                    ]

                    diff = compare_time_slots(correct_time_slots, cached_time_slots)
                    if diff:
                        logging.info(f"Discrepancy found for {cache_key}: {diff}")
                        cache.put(doctor.id, day, correct_time_slots, generation)
                        rewritten += 1
                    else:
                        logging.info(f"Cache is consistent for {cache_key}.")
                finally:
                    release_lock(redis_client, lock_key)

    return rewritten
