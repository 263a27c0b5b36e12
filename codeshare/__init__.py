"""
CodeShare 패키지 초기화 모듈.

서버 구성 요소는 다음 하위 모듈에 정리되어 있다.
- errors: 도메인 예외와 와이어 에러 코드
- protocol: JSON line 기반 프레이밍/직렬화 및 이벤트 이름
- store: 세션/파일 레코드 영속화와 타임아웃 래퍼
- registry: 세션 생성/조회/삭제
- files: 세션별 파일 테이블 (last-write-wins)
- presence: 세션별 접속자 관리
- relay: 연결 관리 및 이벤트 중계
- main: TCP 서버 진입점
"""

__all__ = [
    "errors",
    "files",
    "presence",
    "protocol",
    "registry",
    "relay",
    "store",
]
