"""
工作流程狀態轉換

apply_status_change() 不寫資料庫,只算出要更新哪些欄位:
    1. 依照 aggregate 的 STATE_TYPE 找出啟用中的 State,找不到就是 InvalidState
    2. 會記錄完成時間的 aggregate (Task):
       - 進入 final 狀態且 completed_at 還沒設定 -> 設成現在
       - 離開 final 狀態且 completed_at 有值 -> 清成 None
       - 其他情況不動 (重複套用同一個 final 狀態不會改時間)
"""
from datetime import datetime
from models import State
from errors import InvalidState


def find_active_state(state_id, state_type):
    """查詢指定類型、啟用中的狀態"""
    if state_id is None:
        return None
    return State.query.filter_by(id=state_id, type=state_type, is_active=True).first()


def resolve_state(state_id, state_type, lookup_state=None):
    lookup_state = lookup_state or find_active_state
    state = lookup_state(state_id, state_type)
    if state is None or state.type != state_type or not state.is_active:
        raise InvalidState(f'Invalid state for {state_type.lower()}s')
    return state


def apply_status_change(aggregate, new_state_id, lookup_state=None, now=None):
    """
    計算狀態變更後的欄位

    Args:
        aggregate: Task 或 Project (需要 STATE_TYPE / TRACKS_COMPLETION)
        new_state_id: 新狀態的 id
        lookup_state: (state_id, state_type) -> State | None,預設查資料庫
        now: 完成時間,預設 datetime.utcnow()

    Returns:
        tuple: (state, updates) updates 只包含要寫入的欄位
    """
    state = resolve_state(new_state_id, aggregate.STATE_TYPE, lookup_state)

    updates = {'status_id': state.id}
    if aggregate.TRACKS_COMPLETION:
        completed_at = getattr(aggregate, 'completed_at', None)
        if state.is_final and completed_at is None:
            updates['completed_at'] = now or datetime.utcnow()
        elif not state.is_final and completed_at is not None:
            updates['completed_at'] = None

    return state, updates


def apply_updates(aggregate, updates):
    """把 apply_status_change 算出來的欄位寫回 aggregate,回傳變更紀錄"""
    changes = {}
    for field, new_value in updates.items():
        old_value = getattr(aggregate, field, None)
        if old_value != new_value:
            changes[field] = {
                'old': old_value.isoformat() if isinstance(old_value, datetime) else old_value,
                'new': new_value.isoformat() if isinstance(new_value, datetime) else new_value
            }
            setattr(aggregate, field, new_value)
    return changes


def state_summary(state):
    if state is None:
        return None
    return {
        'id': state.id,
        'name': state.name,
        'description': state.description,
        'color': state.color,
        'is_final': state.is_final
    }

