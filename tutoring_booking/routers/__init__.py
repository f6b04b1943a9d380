from tutoring_booking.routers import admin_overrides, bookings, priority, slots, system, waitlist

__all__ = [
    'admin_overrides',
    'bookings',
    'priority',
    'slots',
    'system',
    'waitlist',
]
