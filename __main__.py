"""
Entry point for LinkChat.
This module provides a command-line interface to start the servers and
to seed the SQLite store.
"""

import argparse

from LinkChat.start import admin, server


def parse():
    # Initialize argument parser for command line interface
    parser = argparse.ArgumentParser(prog='LinkChat', description='LinkChat starter')
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # Realtime server + HTTP API
    server_parser = subparsers.add_parser('server', help='Startup realtime server and HTTP API')
    server_parser.add_argument('--host', default=None, help='Listening address (default: LINKCHAT_HOST)')
    server_parser.add_argument('--port', type=int, default=None, help='Realtime port (default: 8765)')
    server_parser.add_argument('--api-port', type=int, default=None, help='HTTP API port (default: 8766)')

    srv_parser = subparsers.add_parser('srv-only', help='Startup realtime server only')
    srv_parser.add_argument('--host', default=None, help='Listening address (default: LINKCHAT_HOST)')
    srv_parser.add_argument('--port', type=int, default=None, help='Realtime port (default: 8765)')

    api_parser = subparsers.add_parser('api-only', help='Startup HTTP API only')
    api_parser.add_argument('--host', default=None, help='Listening address (default: LINKCHAT_HOST)')
    api_parser.add_argument('--port', type=int, default=None, help='HTTP API port (default: 8766)')

    user_parser = subparsers.add_parser('add-user', help='Create a user')
    user_parser.add_argument('user_id')
    user_parser.add_argument('username')
    user_parser.add_argument('--avatar', default='')

    chat_parser = subparsers.add_parser('add-chat', help='Create a chat')
    chat_parser.add_argument('chat_id')
    chat_parser.add_argument('members', nargs='+')
    chat_parser.add_argument('--type', choices=['private', 'group', 'global'], default='private')
    chat_parser.add_argument('--name', default=None)

    token_parser = subparsers.add_parser('token', help='Issue an access token for a user')
    token_parser.add_argument('user_id')
    token_parser.add_argument('--minutes', type=int, default=None)

    return parser.parse_args()


def main():
    args = parse()

    if args.command == 'server':
        server.server(host=args.host, port=args.port, api_port=args.api_port)
    elif args.command == 'srv-only':
        server.server(host=args.host, port=args.port, srv_only=True)
    elif args.command == 'api-only':
        server.api(host=args.host, port=args.port)
    elif args.command == 'add-user':
        admin.add_user(args.user_id, args.username, args.avatar)
    elif args.command == 'add-chat':
        admin.add_chat(args.chat_id, args.members, args.type, args.name)
    elif args.command == 'token':
        admin.token(args.user_id, args.minutes)
    else:
        raise Exception('Unknown command')


if __name__ == '__main__':
    main()
