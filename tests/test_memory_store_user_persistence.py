from datetime import date

from parley.storage.memory import MemoryStore


def test_memory_store_persists_user_state(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", handle="persist", role="admin", daily_limit=5)
    store.save_password(user.id, "hash", "argon2id")
    store.set_user_model_key(user.id, "sealed")
    store.set_user_profile(user.id, "Likes tea.")
    store.increment_daily_usage(user.id, date(2024, 1, 1), "personal")

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "admin"
    assert reloaded_user.daily_limit == 5
    assert reloaded_user.model_key_cipher == "sealed"
    assert reloaded_user.profile_summary == "Likes tea."
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    usage = reloaded.get_daily_usage(user.id, date(2024, 1, 1))
    assert (usage.responses, usage.personal_responses) == (1, 1)


def test_conversation_messages_and_pins_persist(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("chat@example.com")
    conv = store.create_conversation(user.id, title="Persisted")
    first = store.append_message(conv.id, "user", "hello")
    second = store.append_message(conv.id, "assistant", "")
    store.update_message_content(second.id, "hi there")
    store.set_pin(user.id, second.id, True)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    messages = reloaded.list_messages(conv.id)
    assert [(m.id, m.seq, m.content) for m in messages] == [
        (first.id, 0, "hello"),
        (second.id, 1, "hi there"),
    ]
    assert [p.message_id for p in reloaded.list_pins(user.id)] == [second.id]


def test_list_messages_limit_keeps_most_recent(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("chat@example.com")
    conv = store.create_conversation(user.id)
    for i in range(5):
        store.append_message(conv.id, "user", str(i))

    assert [m.content for m in store.list_messages(conv.id, limit=2)] == ["3", "4"]
    assert store.list_messages(conv.id, limit=0) == []


def test_delete_message_removes_its_pins(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("chat@example.com")
    conv = store.create_conversation(user.id)
    msg = store.append_message(conv.id, "assistant", "pin me")
    store.set_pin(user.id, msg.id, True)

    assert store.delete_message(msg.id) is True
    assert store.list_pins(user.id) == []
    assert store.delete_message(msg.id) is False
