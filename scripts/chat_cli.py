#!/usr/bin/env python3
"""Interactive chat CLI for the relaybot service."""

import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt


class ChatCLI:
    """Interactive chat interface streaming answers from the relaybot service."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.user_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=300.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]relaybot - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /tools, /reset, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}. Make sure it's running.[/red]")
            return

        self.console.print("[green]Connected to relaybot[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/tools":
                    self._show_tools()
                    continue
                elif user_input.lower() == "/reset":
                    self._reset()
                    continue
                elif user_input.strip() == "":
                    continue

                answer = self._stream_message(user_input)
                if answer:
                    self._display_response(answer)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _stream_message(self, message: str) -> str | None:
        """Send a message and echo the answer as it streams in."""
        payload = {"message": message}
        if self.user_id:
            payload["user_id"] = self.user_id

        chunks: list[str] = []
        try:
            with self.client.stream("POST", f"{self.base_url}/conversation/stream", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
                    return None

                self.user_id = response.headers.get("x-user-id", self.user_id)
                for chunk in response.iter_text():
                    chunks.append(chunk)
                    self.console.print(chunk, end="", style="dim", markup=False)

            self.console.print()
            return "".join(chunks)

        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

    def _display_response(self, answer: str) -> None:
        """Display the assistant's answer with markdown formatting."""
        self.console.print(
            Panel(
                Markdown(answer),
                title="[bold green]Assistant[/bold green]",
                border_style="green",
                padding=(1, 2),
            )
        )

    def _reset(self) -> None:
        if self.user_id:
            self.client.delete(f"{self.base_url}/conversation/{self.user_id}")
        self.console.print("[yellow]Conversation reset[/yellow]")

    def _show_tools(self) -> None:
        """Show the tools the assistant can call."""
        try:
            tools = self.client.get(f"{self.base_url}/tools").json()
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return

        if not tools:
            self.console.print("[yellow]No tools registered[/yellow]")
            return

        tool_list = "\n".join(
            f"• [bold]{tool['name']}[/bold] ({tool['provider']}): {tool['description']}" for tool in tools
        )
        self.console.print(Panel(tool_list, title="[yellow]Available Tools[/yellow]", border_style="yellow"))

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /tools - List the tools the assistant can call
• /reset - Forget the conversation and start over
• /quit or /exit - Exit the chat
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
