"""CLI shim -- delegates to course_harvester.cli.main().

Usage:
    python harvest_courses.py --local-dir ./catalogs
    python harvest_courses.py --local-dir ./catalogs --start-page 1 --end-page 10
"""

from course_harvester.cli import main

if __name__ == "__main__":
    main()
