# Scheduler tests
