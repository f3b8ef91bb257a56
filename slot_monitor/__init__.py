"""Appointment slot monitor: Playwright navigation engine with an aiogram operator bot."""
