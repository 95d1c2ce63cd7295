#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Account signup and login (password-wrapped identity key)
- Starting chats with other users through the key directory
- Encrypted text and file messages over relay peers
- Local cache of contacts and message history
"""

import asyncio
import logging
import mimetypes
import sys
import getpass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from .config import ClientSettings, get_settings
from .contacts import Contact
from .directory import KeyDirectory, RetryPolicy
from .errors import ChatError
from .reconciler import RenderedMessage
from .replica import RelayReplica, Replica
from .session import ChatSession
from .storage import LocalCache


HELP_TEXT = """Commands:
  /new <username>     - Start a new chat with a user
  /chat <username>    - Open an existing chat
  /contacts           - List your chats
  /history            - Show the current chat again
  /file <path>        - Send a file (max 5MB)
  /save <n> <path>    - Save attachment number n of the current chat
  /exit               - Leave the current chat
  /help               - Show this help
  /quit               - Quit application"""


class ChatClient:
    """
    Interactive front end around a ChatSession.
    """

    def __init__(self, settings: Optional[ClientSettings] = None, replica: Optional[Replica] = None):
        """
        Initialize chat client.

        Args:
            settings: Client settings; loaded from the environment if omitted
            replica: Replicated store; relay peers from the settings if omitted
        """
        self.settings = settings or get_settings()
        self.replica = replica or RelayReplica(
            self.settings.peers,
            timeout=self.settings.request_timeout,
            on_disconnect=self._on_disconnect,
        )
        self.storage = LocalCache(self.settings.storage_dir, self.settings.storage_quota_bytes)
        policy = RetryPolicy(
            max_attempts=self.settings.resolve_attempts,
            base_delay=self.settings.resolve_base_delay,
            growth=self.settings.resolve_growth,
            max_delay=self.settings.resolve_max_delay,
            min_timeout=self.settings.resolve_min_timeout,
        )
        self.session = ChatSession(
            self.replica,
            self.storage,
            directory=KeyDirectory(self.replica, policy),
            max_file_bytes=self.settings.max_file_bytes,
        )
        self.current_chat: Optional[Contact] = None
        self.timeline: List[RenderedMessage] = []
        self._printed: Set[str] = set()
        self.running = False

    async def register(self, username: str, password: str) -> bool:
        try:
            await self.session.signup(username, password)
        except ChatError as e:
            print(f"Registration failed: {e}")
            return False
        print(f"Registration successful! Welcome, {self.session.username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        try:
            await self.session.login(username, password)
        except ChatError as e:
            print(f"Login failed: {e}")
            return False
        print(f"Login successful! Welcome back, {self.session.username}")
        return True

    def _on_disconnect(self, error: Exception):
        print(f"\n[Connection to relay lost: {error}. Messages will not update until restart.]")

    def _on_contacts(self, contacts: List[Contact]):
        known = {c.chat_id for c in contacts}
        if self.current_chat and self.current_chat.chat_id not in known:
            print(f"\n[{self.current_chat.username} is no longer listed]")

    def _format(self, msg: RenderedMessage) -> str:
        timestamp = datetime.fromtimestamp(msg.timestamp / 1000).strftime("%H:%M")
        prefix = "You" if msg.is_mine else msg.sender
        if msg.pending:
            body = "[waiting for key, /history to retry]"
        elif msg.is_file:
            if msg.failed:
                body = f"[file {msg.file_name}: cannot be opened with current keys]"
            else:
                index = self._attachments().index(msg) + 1
                body = f"[file #{index} {msg.file_name} ({round((msg.size or 0) / 1024)} KB)]"
        else:
            body = msg.text
        return f"[{timestamp}] {prefix}: {body}"

    def _attachments(self) -> List[RenderedMessage]:
        return [m for m in self.timeline if m.is_file and not m.failed]

    def _on_timeline(self, messages: List[RenderedMessage]):
        self.timeline = messages
        for msg in messages:
            if msg.key in self._printed or msg.pending:
                continue
            self._printed.add(msg.key)
            print(self._format(msg))

    async def open_chat(self, contact: Contact):
        self.current_chat = contact
        self.timeline = []
        self._printed = set()
        print(f"--- Chat with {contact.username} ---")
        await self.session.open_chat(contact.chat_id, contact.username, self._on_timeline)
        print(f"Chatting with {contact.username}. Type '/exit' to leave chat, '/help' for commands.")

    async def new_chat(self, partner: str):
        print("Searching...")
        chat_id = await self.session.start_chat(partner)
        await self.open_chat(Contact(username=partner.strip(), chat_id=chat_id))

    async def send_file(self, path: str):
        file_path = Path(path).expanduser()
        if not file_path.is_file():
            print(f"No such file: {path}")
            return
        data = file_path.read_bytes()
        mime_type = mimetypes.guess_type(file_path.name)[0] or ""
        await self.session.send_file(file_path.name, data, mime_type)

    def save_attachment(self, number: str, path: str):
        attachments = self._attachments()
        try:
            msg = attachments[int(number) - 1]
        except (ValueError, IndexError):
            print("No such attachment.")
            return
        Path(path).expanduser().write_bytes(msg.data)
        print(f"Saved {msg.file_name} to {path}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        await self.session.load_contacts(self._on_contacts)

        session = PromptSession()
        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.current_chat:
                        prompt_text = f"[{self.current_chat.username}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.session.send_text(user_input)
                    else:
                        print("No active chat. Use /new <username> to start.")

                except (ChatError, ValueError, OSError) as e:
                    print(f"Error: {e}")
                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            await self.session.logout()
            await self.replica.close()
            self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        if cmd == "/new" and len(parts) == 2:
            await self.new_chat(parts[1])
        elif cmd == "/chat" and len(parts) == 2:
            contact = next((c for c in self.session.contacts if c.username == parts[1]), None)
            if contact:
                await self.open_chat(contact)
            else:
                await self.new_chat(parts[1])
        elif cmd == "/contacts":
            contacts = self.session.contacts
            if not contacts:
                print("No active chats.")
            for contact in contacts:
                print(f"  - {contact.username}")
        elif cmd == "/history" and self.current_chat:
            await self.session.reconciler.refresh()
            for msg in self.timeline:
                print(self._format(msg))
        elif cmd == "/file" and len(parts) >= 2 and self.current_chat:
            await self.send_file(command.split(maxsplit=1)[1])
        elif cmd == "/save" and len(parts) == 3 and self.current_chat:
            self.save_attachment(parts[1], parts[2])
        elif cmd == "/exit":
            await self.session.reconciler.close()
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    client = ChatClient(settings)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.replica.close()
            client.storage.close()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
