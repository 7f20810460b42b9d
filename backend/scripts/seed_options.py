"""CLI script to seed the option catalog with categories and subcategories.
Usage: python scripts/seed_options.py [--role ROLE] [--dry-run]
"""
import sys
import argparse
import pathlib
from typing import Optional
# Ensure `backend/` is on sys.path so `tutorhub` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from tutorhub.database import engine, create_db_and_tables
from tutorhub import services, repositories

CATALOG = {
    "TUTORING": [
        ("Math", "Mathematics from basics to advanced", [
            ("Algebra", "Elementary and advanced algebra"),
            ("Calculus", "Differential and integral calculus"),
            ("Geometry", "Plane and solid geometry"),
            ("Statistics", "Statistics and probability"),
        ]),
        ("Science", "Natural sciences", [
            ("Physics", "Mechanics, electricity and waves"),
            ("Chemistry", "General and organic chemistry"),
            ("Biology", "Life sciences"),
        ]),
        ("Languages", "Language learning", [
            ("English", "English language and literature"),
            ("Arabic", "Arabic language and literature"),
            ("French", "French language and culture"),
        ]),
        ("Computer Science", "Programming and computing", [
            ("Programming Basics", "Introduction to programming"),
            ("Web Development", "HTML, CSS and JavaScript"),
            ("Algorithms", "Algorithm design and analysis"),
        ]),
    ],
    "PROJECTS_MAKER": [
        ("Web Development", "Websites and web applications", []),
        ("Mobile Apps", "iOS, Android and cross-platform projects", []),
        ("Data Analysis", "Python, R and SQL data projects", []),
    ],
    "COURSING": [
        ("Programming Courses", "Structured programming courses", []),
        ("Business Courses", "Business and management courses", []),
        ("Language Courses", "Structured language courses", []),
    ],
    "COACHING": [
        ("Career Coaching", "Career development and guidance", []),
        ("Academic Coaching", "Study skills and academic planning", []),
        ("Life Coaching", "Personal development", []),
    ],
}


def main(role: Optional[str] = None, dry_run: bool = False):
    """Create every catalog entry that does not exist yet.

    Existing top-level options are matched by role and name so the script
    can be re-run safely. Results are printed to stdout.
    """
    create_db_and_tables()
    with Session(engine) as session:
        svc = services.OptionService(session)
        repo = repositories.OptionRepository(session)
        created = 0
        for parent_role, parents in CATALOG.items():
            if role and parent_role != role:
                continue
            existing = {o.name: o for o in repo.list_top_level(roles=[parent_role], include_inactive=True)}
            for sort_order, (name, description, children) in enumerate(parents):
                parent = existing.get(name)
                if parent is None:
                    if dry_run:
                        print(f'Would create {parent_role} / {name} with {len(children)} children')
                        continue
                    parent = svc.create_option(name, parent_role=parent_role, description=description, sort_order=sort_order)
                    created += 1
                known_children = {c.name for c in repo.list_children([parent.id], include_inactive=True)}
                for child_order, (child_name, child_description) in enumerate(children):
                    if child_name in known_children:
                        continue
                    if dry_run:
                        print(f'Would create {parent_role} / {name} / {child_name}')
                        continue
                    svc.create_option(child_name, parent_id=parent.id, description=child_description, sort_order=child_order)
                    created += 1
        print(f'Created options: {created}')


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--role', help='Seed only this parent role (e.g. TUTORING)')
    parser.add_argument('--dry-run', action='store_true', help='Print what would be created')
    args = parser.parse_args()
    main(role=args.role, dry_run=args.dry_run)
