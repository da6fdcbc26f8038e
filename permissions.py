"""
專案與任務的權限判斷

這裡只有純函數:輸入 (使用者 id, 專案 / 任務),回傳 True / False
不查資料庫,也不回傳 HTTP response,由 blueprint 決定要丟 Forbidden 還是 NotFound

id 一律用字串比對,JWT identity 是字串,資料庫 id 是整數
"""


def same_id(left, right):
    if left is None or right is None:
        return False
    return str(left) == str(right)

# ============================================
# 專案
# ============================================

def is_project_owner(user_id, project):
    return same_id(project.owner_id, user_id)


def is_project_member(user_id, project):
    return any(same_id(member.user_id, user_id) for member in project.members)


def find_member(project, user_id):
    """回傳 user 在專案裡的 ProjectMember,不是成員回傳 None"""
    for member in project.members:
        if same_id(member.user_id, user_id):
            return member
    return None


def project_role(user_id, project):
    """
    使用者在專案裡的角色

    Returns:
        'owner' / 成員的角色名稱 / None (沒有權限)
    """
    if is_project_owner(user_id, project):
        return 'owner'
    member = find_member(project, user_id)
    if member is None:
        return None
    return member.role.name if member.role is not None else 'member'


def can_read_project(user_id, project):
    return is_project_owner(user_id, project) or is_project_member(user_id, project)


def can_write_project(user_id, project):
    return is_project_owner(user_id, project)


def can_manage_members(user_id, project):
    return is_project_owner(user_id, project)

# ============================================
# 任務
# ============================================

def is_task_creator(user_id, task):
    return same_id(task.created_by, user_id)


def is_task_assignee(user_id, task):
    return same_id(task.assigned_to, user_id)


def can_read_task(user_id, task, project):
    """專案 owner、成員、建立者、被指派者都能看"""
    return (
        can_read_project(user_id, project)
        or is_task_creator(user_id, task)
        or is_task_assignee(user_id, task)
    )


def can_write_task(user_id, task, project):
    return (
        is_project_owner(user_id, project)
        or is_task_creator(user_id, task)
        or is_task_assignee(user_id, task)
    )


def can_delete_task(user_id, task, project):
    return is_project_owner(user_id, project) or is_task_creator(user_id, task)


def can_change_task_status(user_id, task, project):
    return (
        is_project_owner(user_id, project)
        or is_project_member(user_id, project)
        or is_task_assignee(user_id, task)
    )


def can_assign_task(user_id, project):
    return is_project_owner(user_id, project)


def is_eligible_assignee(target_user_id, project):
    """被指派的人必須是專案 owner 或現有成員"""
    return is_project_owner(target_user_id, project) or is_project_member(target_user_id, project)

# ============================================
# 系統管理
# ============================================

def is_admin(user, admin_role_name):
    return (
        user is not None
        and user.is_active
        and user.global_role is not None
        and user.global_role.is_active
        and user.global_role.name == admin_role_name
    )


def is_self_target(actor_id, target_id):
    """管理員不能對自己做刪除或改角色"""
    return same_id(actor_id, target_id)
