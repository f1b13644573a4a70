"""
Seminar Coordinator

招待講演者のライフサイクルと講演候補日の排他割り当てを管理するエンジン:
- 推薦・招待・回答の状態遷移
- 候補日のロック・解除・論理削除
- ワークフローの監査ログ
- 承諾時の3日間訪問アジェンダ作成
"""

__version__ = "0.1.0"
