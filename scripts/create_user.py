"""Create a (staff) user in the configured database. Usage:

  python3 scripts/create_user.py --user kitchen --password 'long-password' --staff --pg '<CONN>'

If `--pg` is not provided the script will use the app's configured engine
(via `DATABASE_URL` or the default sqlite file).
"""
import argparse
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--user', required=True)
    p.add_argument('--password', required=True)
    p.add_argument('--staff', action='store_true', help='Allow access to the kitchen board and admin API')
    p.add_argument('--pg', required=False, help='Optional Postgres URL to override env')
    args = p.parse_args()

    if args.pg:
        os.environ['DATABASE_URL'] = args.pg

    from database.models import init_db
    from logic.logging import configure_logging
    from logic.services import create_user

    configure_logging()
    init_db()
    try:
        uid = create_user(args.user, args.password, is_staff=args.staff)
    except ValueError as e:
        print('Error creating user:', e)
        return 1
    role = 'staff user' if args.staff else 'user'
    print(f'Created {role} {args.user} with id {uid}')
    return 0


if __name__ == '__main__':
    sys.exit(main())
