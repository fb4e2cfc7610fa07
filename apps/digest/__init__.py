"""
Digest App - scheduled reporting

Responsibilities:
- Once-per-day report slots in DAILY_TZ with a catch-up window
- Periodic status report
- Archive and deep reset of report files after scheduled digests
- Optional SFTP upload of archived reports
"""
