import asyncio
import logging
import os
import shlex

from dotenv import load_dotenv

from solo_tutor import ChatRequest, ConversationNotFound, Settings, SoloTutor
from solo_tutor.maintenance import backfill_embeddings

# Load API keys and backend settings from a local .env file
load_dotenv()


def print_help():
    print("\nAvailable commands:")
    print("  /help               Show this help message")
    print("  /quit               Exit")
    print("  /new [title]        Start a new conversation")
    print("  /chats              List your conversations (most recent first)")
    print("  /switch <id>        Switch to another conversation (id prefix is enough)")
    print("  /history            Show the full history of the current conversation")
    print("  /title <text>       Rename the current conversation")
    print("  /delete             Delete the current conversation and its messages")
    print("  /image <uri> [text] Send an image reference, with optional text")
    print("  /explain <text>     Show which memories a message would use, without asking the tutor")
    print("  /stats              Show database stats for the current user")
    print("  /backfill           Embed stored messages that have no embedding yet")
    print("  (Anything else)     Is sent to the tutor as a normal message")


def print_stats(tutor: SoloTutor, user_id: str):
    stats = tutor.store.stats(user_id)
    print("\n📊 Stats")
    print(f"  Current user_id: {user_id}")
    print(f"  Conversations: {stats['conversations']}")
    print(f"  Messages: {stats['messages']} (user: {stats['user_messages']}, "
          f"assistant: {stats['assistant_messages']})")
    print(f"  Embedded messages: {stats['embedded']}")
    print(f"  Indexed vectors: {len(tutor.index)}")
    print(f"  Embedding backend: {tutor.settings.embedding_backend} "
          f"({tutor.settings.embedding_model}, dim={tutor.settings.embedding_dim})")


def print_explain(tutor: SoloTutor, user_id: str, conversation_id: str, query: str):
    context = asyncio.run(tutor.explain(user_id, query, conversation_id))

    print("\n🧭 Explain")
    print(f"  Query: {query}")
    if context.degraded:
        print("  Long-term memory unavailable (embedding or search failed)")

    print("\n  Recalled from earlier conversations:")
    if context.long_term_only:
        for item in context.long_term_only:
            msg = item.message
            print(f"    - (sim={item.score:.3f}, {msg.role.value}, "
                  f"{msg.created_at:%Y-%m-%d}) {msg.content[:80]}")
    else:
        print("    - (none)")

    print("\n  Recent conversation:")
    if context.short_term:
        for msg in context.short_term:
            print(f"    - ({msg.role.value}) {msg.content[:80]}")
    else:
        print("    - (none)")

    print("\n  Settings:")
    print(f"    - long_term_top_k: {tutor.settings.long_term_top_k}")
    print(f"    - short_term_limit: {tutor.settings.short_term_limit}")
    print(f"    - similarity_threshold: {tutor.settings.similarity_threshold}")


def find_conversation(tutor: SoloTutor, user_id: str, prefix: str):
    matches = [c for c in tutor.list_conversations(user_id) if c.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


def send(tutor: SoloTutor, user_id: str, conversation_id: str, text: str, image_ref=None):
    request = ChatRequest(
        user_id=user_id,
        message=text,
        conversation_id=conversation_id,
        image_ref=image_ref,
    )
    response = asyncio.run(tutor.handle(request))
    if not response.success:
        print(f"Assistant: {response.error}")
        logging.getLogger(__name__).debug("Turn failed: %s", response.error_kind)
        return

    print(f"Assistant: {response.assistant_message.content}")
    details = response.rag_details
    if details and details.context_used:
        print(f"\n[Debug - {details.context_type}: {details.relevant_history_count} recalled, "
              f"{details.recent_conversation_count} recent]")


def interactive_chat():
    """Run an interactive tutoring session with memory"""
    print("🎨 Canvas Solo Tutor - Interactive Mode")
    print("Commands: /help for a list of commands")
    print("-" * 50)

    settings = Settings.from_env()
    tutor = SoloTutor.from_settings(settings)

    # Simple user ID (in real app, this comes from auth)
    user_id = os.getenv("TUTOR_USER_ID", "interactive_user")
    conversation = tutor.store.get_or_create_default(user_id)
    print(f"Conversation: {conversation.title or '(untitled)'} [{conversation.id[:8]}]")

    while True:
        try:
            user_input = input("\nYou: ").strip()

            if not user_input:
                continue

            lowered = user_input.lower()

            if lowered in {"/help", "help", "?", "/?"}:
                print_help()
                continue

            if lowered == "/quit":
                break

            elif lowered.startswith("/new"):
                title = user_input[len("/new"):].strip() or None
                conversation = tutor.create_conversation(user_id, title)
                print(f"Started conversation {conversation.id[:8]}")
                continue

            elif lowered == "/chats":
                print("\n💬 Conversations:")
                for conv in tutor.list_conversations(user_id):
                    marker = "*" if conv.id == conversation.id else " "
                    print(f" {marker} [{conv.id[:8]}] {conv.title or '(untitled)'} "
                          f"(updated {conv.updated_at:%Y-%m-%d %H:%M})")
                continue

            elif lowered.startswith("/switch"):
                prefix = user_input[len("/switch"):].strip()
                target = find_conversation(tutor, user_id, prefix) if prefix else None
                if target is None:
                    print("Usage: /switch <id>  (use /chats to list ids)")
                    continue
                conversation = target
                print(f"Switched to {conversation.title or '(untitled)'} [{conversation.id[:8]}]")
                continue

            elif lowered == "/history":
                for msg in tutor.get_history(conversation.id, user_id):
                    image = f" [image: {msg.image_ref}]" if msg.image_ref else ""
                    print(f"  [{msg.created_at:%H:%M:%S}] {msg.role.value}: {msg.content}{image}")
                continue

            elif lowered.startswith("/title"):
                title = user_input[len("/title"):].strip()
                if not title:
                    print("Usage: /title <text>")
                    continue
                conversation = tutor.rename_conversation(conversation.id, user_id, title)
                print(f"Renamed conversation to '{conversation.title}'")
                continue

            elif lowered == "/delete":
                removed = tutor.delete_conversation(conversation.id, user_id)
                print(f"Deleted conversation with {removed} message(s)")
                conversation = tutor.store.get_or_create_default(user_id)
                print(f"Now in conversation {conversation.id[:8]}")
                continue

            elif lowered.startswith("/image"):
                parts = shlex.split(user_input)
                if len(parts) < 2:
                    print("Usage: /image <uri> [text]")
                    continue
                send(tutor, user_id, conversation.id, " ".join(parts[2:]), image_ref=parts[1])
                continue

            elif lowered.startswith("/explain"):
                query = user_input[len("/explain"):].strip()
                if not query:
                    print("Usage: /explain <text>")
                    continue
                print_explain(tutor, user_id, conversation.id, query)
                continue

            elif lowered == "/stats":
                print_stats(tutor, user_id)
                continue

            elif lowered == "/backfill":
                result = backfill_embeddings(tutor.store, tutor.embedder, tutor.index, user_id=user_id)
                print(f"Embedded {result['embedded']} / {result['pending']} messages "
                      f"(skipped {result['skipped']})")
                continue

            send(tutor, user_id, conversation.id, user_input)

        except ConversationNotFound:
            print("That conversation no longer exists.")
            conversation = tutor.store.get_or_create_default(user_id)
        except KeyboardInterrupt:
            print("\nUse /quit to exit properly")
        except EOFError:
            break
        except Exception as e:
            print(f"Error: {e}")


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    interactive_chat()


if __name__ == "__main__":
    main()
